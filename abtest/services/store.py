"""Experiment storage interface and the in-memory reference store."""
from abc import ABC, abstractmethod
from collections import Counter, defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple
import copy
import threading
import uuid

from abtest.exceptions import ConflictError, NotFoundError
from abtest.schemas.assignment import Assignment, Conversion
from abtest.schemas.experiment import Experiment, ExperimentStatus

# Fields an experiment accepts through update_experiment
UPDATABLE_FIELDS = frozenset({"name", "description", "audience", "end_date"})


class ExperimentStore(ABC):
    """
    Durable state for experiments, variants, assignments and conversions.

    Implementations must make ``create_assignment_if_absent`` atomic per
    (experiment_id, user_id) and ``compare_and_set_status`` a real
    check-and-set; the service holds no locks of its own.
    """

    @abstractmethod
    def create_experiment(self, experiment: Experiment) -> Experiment:
        """Persist an experiment together with its variants."""

    @abstractmethod
    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        """Return the experiment or None."""

    @abstractmethod
    def list_experiments(
        self,
        status: Optional[ExperimentStatus] = None,
        page: int = 1,
        page_size: int = 10
    ) -> Tuple[List[Experiment], int]:
        """Return one page of experiments (newest first) and the total count."""

    @abstractmethod
    def update_experiment(self, experiment_id: str, changes: Dict[str, Any]) -> Experiment:
        """
        Apply field changes.

        Raises:
            NotFoundError: Experiment does not exist
            ConflictError: Experiment is COMPLETED or ARCHIVED
        """

    @abstractmethod
    def compare_and_set_status(
        self,
        experiment_id: str,
        expected: ExperimentStatus,
        target: ExperimentStatus,
        changes: Optional[Dict[str, Any]] = None
    ) -> Experiment:
        """
        Move ``expected`` -> ``target`` only if the stored status is still ``expected``.

        Raises:
            NotFoundError: Experiment does not exist
            ConflictError: Stored status changed since it was read
        """

    @abstractmethod
    def delete_experiment(self, experiment_id: str) -> bool:
        """
        Delete an experiment with its variants, assignments and conversions.

        Returns:
            False if the experiment does not exist

        Raises:
            ConflictError: Experiment is RUNNING
        """

    @abstractmethod
    def get_assignment(self, experiment_id: str, user_id: str) -> Optional[Assignment]:
        """Return the user's assignment or None."""

    @abstractmethod
    def create_assignment_if_absent(self, experiment_id: str, user_id: str, variant_id: str) -> Assignment:
        """
        Record an assignment unless one exists; return the one on record.

        Concurrent callers for the same (experiment_id, user_id) all get
        back the winning row, which may name a different variant than
        the one they asked for.
        """

    @abstractmethod
    def record_conversion(self, conversion: Conversion) -> Conversion:
        """Append a conversion event."""

    @abstractmethod
    def count_assignments(self, experiment_id: str, variant_id: str) -> int:
        """Number of users assigned to a variant."""

    @abstractmethod
    def count_unique_converters(self, experiment_id: str, variant_id: str) -> int:
        """Number of distinct users with at least one conversion in a variant."""


class InMemoryExperimentStore(ExperimentStore):
    """
    Thread-safe in-process store.

    Every operation runs under one re-entrant lock. Values are deep-copied
    on the way in and on the way out, so callers never share mutable
    state with the store.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._experiments: Dict[str, Experiment] = {}
        self._assignments: Dict[Tuple[str, str], Assignment] = {}
        self._conversions: List[Conversion] = []
        self._assignment_counts: Counter = Counter()
        self._converters: Dict[Tuple[str, str], Set[str]] = defaultdict(set)

    def create_experiment(self, experiment: Experiment) -> Experiment:
        with self._lock:
            if experiment.id in self._experiments:
                raise ConflictError(f"Experiment {experiment.id} already exists")
            self._experiments[experiment.id] = experiment.model_copy(deep=True)
            return experiment.model_copy(deep=True)

    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        with self._lock:
            experiment = self._experiments.get(experiment_id)
            return experiment.model_copy(deep=True) if experiment else None

    def list_experiments(
        self,
        status: Optional[ExperimentStatus] = None,
        page: int = 1,
        page_size: int = 10
    ) -> Tuple[List[Experiment], int]:
        with self._lock:
            # Insertion order breaks created_at ties
            ordered = list(enumerate(self._experiments.values()))

        if status:
            ordered = [(seq, e) for seq, e in ordered if e.status == status]
        ordered.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        experiments = [e for _, e in ordered]

        start = (page - 1) * page_size
        return [e.model_copy(deep=True) for e in experiments[start:start + page_size]], len(experiments)

    def update_experiment(self, experiment_id: str, changes: Dict[str, Any]) -> Experiment:
        with self._lock:
            experiment = self._require(experiment_id)
            if experiment.is_terminal:
                raise ConflictError(
                    f"Cannot update experiment {experiment_id} in status {experiment.status.value}"
                )
            update = {k: copy.deepcopy(v) for k, v in changes.items() if k in UPDATABLE_FIELDS}
            update["updated_at"] = datetime.now(timezone.utc)
            self._experiments[experiment_id] = experiment.model_copy(update=update)
            return self._experiments[experiment_id].model_copy(deep=True)

    def compare_and_set_status(
        self,
        experiment_id: str,
        expected: ExperimentStatus,
        target: ExperimentStatus,
        changes: Optional[Dict[str, Any]] = None
    ) -> Experiment:
        with self._lock:
            experiment = self._require(experiment_id)
            if experiment.status != expected:
                raise ConflictError(
                    f"Experiment {experiment_id} is {experiment.status.value}, expected {expected.value}"
                )
            update = copy.deepcopy(dict(changes or {}))
            update["status"] = target
            update["updated_at"] = datetime.now(timezone.utc)
            self._experiments[experiment_id] = experiment.model_copy(update=update)
            return self._experiments[experiment_id].model_copy(deep=True)

    def delete_experiment(self, experiment_id: str) -> bool:
        with self._lock:
            experiment = self._experiments.get(experiment_id)
            if not experiment:
                return False
            if experiment.status == ExperimentStatus.RUNNING:
                raise ConflictError(f"Cannot delete running experiment {experiment_id}")

            del self._experiments[experiment_id]
            for key in [k for k in self._assignments if k[0] == experiment_id]:
                del self._assignments[key]
            self._conversions = [c for c in self._conversions if c.experiment_id != experiment_id]
            for variant in experiment.variants:
                self._assignment_counts.pop((experiment_id, variant.id), None)
                self._converters.pop((experiment_id, variant.id), None)
            return True

    def get_assignment(self, experiment_id: str, user_id: str) -> Optional[Assignment]:
        with self._lock:
            assignment = self._assignments.get((experiment_id, user_id))
            return assignment.model_copy() if assignment else None

    def create_assignment_if_absent(self, experiment_id: str, user_id: str, variant_id: str) -> Assignment:
        with self._lock:
            key = (experiment_id, user_id)
            existing = self._assignments.get(key)
            if existing:
                return existing.model_copy()

            self._require(experiment_id)
            assignment = Assignment(
                id=str(uuid.uuid4()),
                experiment_id=experiment_id,
                variant_id=variant_id,
                user_id=user_id,
                assigned_at=datetime.now(timezone.utc)
            )
            self._assignments[key] = assignment
            self._assignment_counts[(experiment_id, variant_id)] += 1
            return assignment.model_copy()

    def record_conversion(self, conversion: Conversion) -> Conversion:
        with self._lock:
            self._require(conversion.experiment_id)
            stored = conversion.model_copy(deep=True)
            self._conversions.append(stored)
            self._converters[(conversion.experiment_id, conversion.variant_id)].add(conversion.user_id)
            return stored.model_copy(deep=True)

    def count_assignments(self, experiment_id: str, variant_id: str) -> int:
        with self._lock:
            return self._assignment_counts.get((experiment_id, variant_id), 0)

    def count_unique_converters(self, experiment_id: str, variant_id: str) -> int:
        with self._lock:
            converters = self._converters.get((experiment_id, variant_id))
            return len(converters) if converters else 0

    def _require(self, experiment_id: str) -> Experiment:
        experiment = self._experiments.get(experiment_id)
        if not experiment:
            raise NotFoundError(f"Experiment {experiment_id} not found")
        return experiment
