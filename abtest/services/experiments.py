"""Experimentation service for A/B testing."""
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import redis
import structlog

from abtest.exceptions import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from abtest.schemas.assignment import Conversion
from abtest.schemas.experiment import (
    AudienceFilter,
    CreateExperimentRequest,
    Experiment,
    ExperimentPage,
    ExperimentStatus,
    UpdateExperimentRequest,
    Variant,
    VariantSpec,
)
from abtest.schemas.results import ExperimentResults, VariantResults
from abtest.services.assignment_cache import AssignmentCache
from abtest.services.hashing import audience_key, bucket_key, stable_hash
from abtest.services.significance import SignificanceCalculator
from abtest.services.store import ExperimentStore

logger = structlog.get_logger()

ALLOCATION_TOLERANCE = 0.01

# target status -> statuses it can be reached from
TRANSITIONS: Dict[ExperimentStatus, Tuple[ExperimentStatus, ...]] = {
    ExperimentStatus.RUNNING: (ExperimentStatus.DRAFT, ExperimentStatus.PAUSED),
    ExperimentStatus.PAUSED: (ExperimentStatus.RUNNING,),
    ExperimentStatus.COMPLETED: (
        ExperimentStatus.DRAFT,
        ExperimentStatus.RUNNING,
        ExperimentStatus.PAUSED,
    ),
}

TRANSITION_EVENTS = {
    ExperimentStatus.RUNNING: "experiment_started",
    ExperimentStatus.PAUSED: "experiment_paused",
    ExperimentStatus.COMPLETED: "experiment_completed",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def normalize_variants(specs: List[VariantSpec]) -> List[VariantSpec]:
    """
    Validate variant definitions and return a normalized copy.

    Allocations must sum to 100 (within 0.01). If no variant is marked
    as control the first one is promoted; the caller's list is left
    untouched.

    Raises:
        ValidationError: Allocation sum is off, or more than one control
    """
    total = sum(spec.allocation for spec in specs)
    if abs(total - 100) > ALLOCATION_TOLERANCE:
        raise ValidationError(f"Variant allocations must sum to 100, got {total:g}")

    control_count = sum(1 for spec in specs if spec.is_control)
    if control_count > 1:
        raise ValidationError(f"Exactly one control variant required, got {control_count}")

    if control_count == 0:
        return [specs[0].model_copy(update={"is_control": True})] + list(specs[1:])
    return list(specs)


def select_variant(variants: List[Variant], bucket: float) -> Variant:
    """
    Pick the variant whose cumulative allocation first reaches ``bucket``.

    Variants are walked in their defined order. Zero-allocation variants
    never receive traffic. If rounding leaves the cumulative sum just
    short of the bucket, the last variant is used.
    """
    cumulative = 0.0
    for variant in variants:
        cumulative += variant.allocation
        if variant.allocation > 0 and bucket <= cumulative:
            return variant
    return variants[-1]


def is_in_audience(audience: Optional[AudienceFilter], experiment_id: str, user_id: str) -> bool:
    """Check the allow-list and the percentage gate; both must pass when set."""
    if audience is None:
        return True

    if audience.user_ids and user_id not in audience.user_ids:
        return False

    if audience.percentage is not None:
        if stable_hash(audience_key(experiment_id, user_id)) > audience.percentage:
            return False

    return True


class ExperimentService:
    """
    Experiment lifecycle, assignment, conversion tracking and results.

    Holds no locks: assignment uniqueness and status check-and-set are
    delegated to the store. The optional cache is advisory only.
    """

    def __init__(
        self,
        store: ExperimentStore,
        calculator: Optional[SignificanceCalculator] = None,
        cache: Optional[AssignmentCache] = None,
        default_confidence_level: float = 0.95,
        default_page_size: int = 10
    ):
        self.store = store
        self.calculator = calculator or SignificanceCalculator()
        self.cache = cache
        self.default_confidence_level = default_confidence_level
        self.default_page_size = default_page_size

    # Lifecycle

    def create_experiment(self, request: CreateExperimentRequest) -> Experiment:
        """
        Create a new experiment in DRAFT status.

        Args:
            request: Name, variants (allocations summing to 100), optional
                audience, dates and creator

        Returns:
            Created Experiment with generated ids

        Raises:
            ValidationError: Allocations don't sum to 100, more than one
                control, or the end date precedes the start date
        """
        if request.start_date and request.end_date:
            if _as_utc(request.end_date) <= _as_utc(request.start_date):
                raise ValidationError("End date must be after start date")

        specs = normalize_variants(request.variants)

        experiment_id = str(uuid.uuid4())
        now = _utcnow()
        experiment = Experiment(
            id=experiment_id,
            name=request.name,
            description=request.description,
            status=ExperimentStatus.DRAFT,
            variants=[
                Variant(
                    id=str(uuid.uuid4()),
                    experiment_id=experiment_id,
                    name=spec.name,
                    description=spec.description,
                    allocation=spec.allocation,
                    is_control=spec.is_control,
                    config=dict(spec.config)
                )
                for spec in specs
            ],
            audience=request.audience,
            start_date=request.start_date,
            end_date=request.end_date,
            created_by=request.created_by,
            created_at=now,
            updated_at=now
        )

        created = self.store.create_experiment(experiment)
        logger.info(
            "experiment_created",
            experiment_id=created.id,
            name=created.name,
            variants=len(created.variants),
            created_by=created.created_by
        )
        return created

    def get_experiment(self, experiment_id: str) -> Experiment:
        """Get experiment by id or raise NotFoundError."""
        experiment = self.store.get_experiment(experiment_id)
        if not experiment:
            raise NotFoundError(f"Experiment {experiment_id} not found")
        return experiment

    def list_experiments(
        self,
        status: Optional[ExperimentStatus] = None,
        page: int = 1,
        page_size: Optional[int] = None
    ) -> ExperimentPage:
        """List experiments newest first, optionally filtered by status."""
        page_size = page_size or self.default_page_size
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be positive")

        experiments, total = self.store.list_experiments(status=status, page=page, page_size=page_size)
        return ExperimentPage(experiments=experiments, total=total, page=page, page_size=page_size)

    def update_experiment(self, experiment_id: str, request: UpdateExperimentRequest) -> Experiment:
        """
        Update name, description, audience or end date.

        Raises:
            NotFoundError: Experiment does not exist
            ConflictError: Experiment is COMPLETED or ARCHIVED
            ValidationError: Name cleared, or end date before start date
        """
        experiment = self.get_experiment(experiment_id)
        if experiment.is_terminal:
            raise ConflictError(
                f"Cannot update experiment {experiment_id} in status {experiment.status.value}"
            )

        changes = {field: getattr(request, field) for field in request.model_fields_set}
        if "name" in changes and changes["name"] is None:
            raise ValidationError("Experiment name cannot be empty")

        end_date = changes.get("end_date")
        if end_date and experiment.start_date and _as_utc(end_date) <= _as_utc(experiment.start_date):
            raise ValidationError("End date must be after start date")

        if not changes:
            return experiment

        updated = self.store.update_experiment(experiment_id, changes)
        logger.info("experiment_updated", experiment_id=experiment_id, fields=sorted(changes))
        return updated

    def start_experiment(self, experiment_id: str) -> Experiment:
        """Start an experiment (DRAFT/PAUSED -> RUNNING). Sets the start date if unset."""
        return self._transition(experiment_id, ExperimentStatus.RUNNING)

    def pause_experiment(self, experiment_id: str) -> Experiment:
        """Pause an experiment (RUNNING -> PAUSED)."""
        return self._transition(experiment_id, ExperimentStatus.PAUSED)

    def end_experiment(self, experiment_id: str) -> Experiment:
        """Complete an experiment (DRAFT/RUNNING/PAUSED -> COMPLETED). Sets the end date."""
        return self._transition(experiment_id, ExperimentStatus.COMPLETED)

    def delete_experiment(self, experiment_id: str) -> None:
        """
        Delete an experiment with its assignments and conversions.

        Raises:
            NotFoundError: Experiment does not exist
            ConflictError: Experiment is RUNNING
        """
        experiment = self.get_experiment(experiment_id)
        if experiment.status == ExperimentStatus.RUNNING:
            raise ConflictError(f"Cannot delete running experiment {experiment_id}")

        if not self.store.delete_experiment(experiment_id):
            raise NotFoundError(f"Experiment {experiment_id} not found")

        if self.cache:
            try:
                self.cache.invalidate_experiment(experiment_id)
            except redis.RedisError as e:
                logger.warning("assignment_cache_error", op="invalidate", experiment_id=experiment_id, error=str(e))

        logger.info("experiment_deleted", experiment_id=experiment_id)

    def _transition(self, experiment_id: str, target: ExperimentStatus) -> Experiment:
        experiment = self.get_experiment(experiment_id)
        current = experiment.status

        if current not in TRANSITIONS[target]:
            logger.warning(
                "invalid_state_transition",
                experiment_id=experiment_id,
                current=current.value,
                target=target.value
            )
            raise InvalidTransitionError(experiment_id, current.value, target.value)

        changes = {}
        if target == ExperimentStatus.RUNNING and experiment.start_date is None:
            changes["start_date"] = _utcnow()
        if target == ExperimentStatus.COMPLETED:
            changes["end_date"] = _utcnow()

        updated = self.store.compare_and_set_status(experiment_id, current, target, changes)
        logger.info(TRANSITION_EVENTS[target], experiment_id=experiment_id, previous=current.value)
        return updated

    # Assignment

    def assign_variant(self, experiment_id: str, user_id: str) -> Optional[Variant]:
        """
        Deterministically assign a variant to a user.

        The same user always gets the same variant for the life of the
        experiment: an existing assignment is returned as-is, and a new
        one is recorded through the store's create-if-absent primitive.

        Args:
            experiment_id: Experiment identifier
            user_id: Unique user identifier

        Returns:
            The user's Variant, or None if the experiment is missing, not
            running, or the user is outside its audience

        Example:
            >>> variant = service.assign_variant(experiment.id, "user_123")
            >>> variant.name  # same answer on every call
            'control'
        """
        experiment = self.store.get_experiment(experiment_id)
        if not experiment or experiment.status != ExperimentStatus.RUNNING:
            return None

        existing = self._recorded_variant(experiment, user_id)
        if existing is not None:
            return existing

        if not is_in_audience(experiment.audience, experiment_id, user_id):
            return None

        chosen = select_variant(experiment.variants, stable_hash(bucket_key(experiment_id, user_id)))
        assignment = self.store.create_assignment_if_absent(experiment_id, user_id, chosen.id)

        variant = experiment.get_variant(assignment.variant_id)
        if variant is None:
            raise NotFoundError(
                f"Variant {assignment.variant_id} of experiment {experiment_id} not found"
            )

        if variant.id != chosen.id:
            logger.info(
                "assignment_race_lost",
                experiment_id=experiment_id,
                user_id=user_id,
                computed=chosen.id,
                stored=variant.id
            )

        self._cache_set(experiment_id, user_id, variant.id)
        logger.info(
            "user_assigned",
            experiment_id=experiment_id,
            user_id=user_id,
            variant_id=variant.id,
            variant=variant.name
        )
        return variant

    def get_user_variant(self, experiment_id: str, user_id: str) -> Optional[Variant]:
        """Return the user's recorded variant without assigning one."""
        experiment = self.store.get_experiment(experiment_id)
        if not experiment:
            return None
        return self._recorded_variant(experiment, user_id)

    def _recorded_variant(self, experiment: Experiment, user_id: str) -> Optional[Variant]:
        """Cache first, then store. A cached id that no longer matches a variant is ignored."""
        cached_id = self._cache_get(experiment.id, user_id)
        if cached_id:
            variant = experiment.get_variant(cached_id)
            if variant:
                return variant

        assignment = self.store.get_assignment(experiment.id, user_id)
        if not assignment:
            return None

        variant = experiment.get_variant(assignment.variant_id)
        if variant:
            self._cache_set(experiment.id, user_id, variant.id)
        return variant

    def _cache_get(self, experiment_id: str, user_id: str) -> Optional[str]:
        if not self.cache:
            return None
        try:
            return self.cache.get(experiment_id, user_id)
        except redis.RedisError as e:
            logger.warning("assignment_cache_error", op="get", experiment_id=experiment_id, error=str(e))
            return None

    def _cache_set(self, experiment_id: str, user_id: str, variant_id: str) -> None:
        if not self.cache:
            return
        try:
            self.cache.set(experiment_id, user_id, variant_id)
        except redis.RedisError as e:
            logger.warning("assignment_cache_error", op="set", experiment_id=experiment_id, error=str(e))

    # Conversions and results

    def record_conversion(
        self,
        experiment_id: str,
        user_id: str,
        event_type: str,
        value: Optional[float] = None,
        metadata: Optional[dict] = None
    ) -> bool:
        """
        Record a conversion against the user's assigned variant.

        Returns:
            True if attributed; False if the experiment does not exist or
            the user has no assignment in it
        """
        experiment = self.store.get_experiment(experiment_id)
        if not experiment:
            return False

        variant = self._recorded_variant(experiment, user_id)
        if not variant:
            logger.info(
                "conversion_unattributed",
                experiment_id=experiment_id,
                user_id=user_id,
                event_type=event_type
            )
            return False

        self.store.record_conversion(
            Conversion(
                id=str(uuid.uuid4()),
                experiment_id=experiment_id,
                variant_id=variant.id,
                user_id=user_id,
                event_type=event_type,
                value=value,
                metadata=metadata,
                created_at=_utcnow()
            )
        )
        logger.info(
            "conversion_recorded",
            experiment_id=experiment_id,
            user_id=user_id,
            variant_id=variant.id,
            event_type=event_type
        )
        return True

    def get_results(self, experiment_id: str, confidence_level: Optional[float] = None) -> ExperimentResults:
        """
        Aggregate participants and unique converters per variant and
        compare every treatment against the control.

        The winner is the treatment with the highest conversion rate
        among those that are significant and beat the control.

        Raises:
            NotFoundError: Experiment does not exist
            ValidationError: Confidence level outside (0, 1)
        """
        experiment = self.get_experiment(experiment_id)
        level = confidence_level if confidence_level is not None else self.default_confidence_level
        if not 0 < level < 1:
            raise ValidationError(f"Confidence level must be between 0 and 1, got {level}")

        results: List[VariantResults] = []
        control: Optional[VariantResults] = None

        for variant in experiment.variants:
            participants = self.store.count_assignments(experiment_id, variant.id)
            conversions = self.store.count_unique_converters(experiment_id, variant.id)
            result = VariantResults(
                variant_id=variant.id,
                variant_name=variant.name,
                is_control=variant.is_control,
                allocation=variant.allocation,
                participants=participants,
                conversions=conversions,
                conversion_rate=conversions / participants if participants > 0 else 0.0
            )
            if variant.is_control:
                control = result
            results.append(result)

        winner: Optional[VariantResults] = None
        if control and control.participants > 0:
            for result in results:
                if result.is_control or result.participants == 0:
                    continue

                significance = self.calculator.calculate_significance(
                    control_conversions=control.conversions,
                    control_participants=control.participants,
                    treatment_conversions=result.conversions,
                    treatment_participants=result.participants,
                    confidence_level=level
                )
                if control.conversion_rate > 0:
                    result.improvement = significance.relative_improvement
                result.confidence_interval = significance.confidence_interval
                result.p_value = significance.p_value
                result.is_significant = significance.is_significant
                result.sample_size_recommendation = significance.sample_size_recommendation

                if significance.is_significant and result.conversion_rate > control.conversion_rate:
                    if winner is None or result.conversion_rate > winner.conversion_rate:
                        winner = result

        return ExperimentResults(
            experiment_id=experiment.id,
            experiment_name=experiment.name,
            status=experiment.status,
            start_date=experiment.start_date,
            end_date=experiment.end_date,
            variants=results,
            winner=winner.variant_id if winner else None,
            is_significant=winner is not None,
            confidence_level=level
        )
