"""SQLAlchemy-backed experiment store."""
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple
import uuid

from sqlalchemy import distinct, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from abtest.exceptions import ConflictError, NotFoundError, StoreError
from abtest.models import AssignmentDB, ConversionDB, ExperimentDB, VariantDB
from abtest.schemas.assignment import Assignment, Conversion
from abtest.schemas.experiment import Experiment, ExperimentStatus, TERMINAL_STATUSES
from abtest.services.store import ExperimentStore, UPDATABLE_FIELDS


class SqlExperimentStore(ExperimentStore):
    """
    Store backed by a relational database.

    Assignment uniqueness relies on the ``uq_assignment_experiment_user``
    constraint; status transitions are conditional UPDATEs filtered on
    the expected status, so two concurrent admin actions cannot both win.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """Session scope that rolls back and wraps driver failures in StoreError."""
        session = self.session_factory()
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreError(f"Experiment store failure: {e}") from e
        finally:
            session.close()

    def create_experiment(self, experiment: Experiment) -> Experiment:
        with self._session() as db:
            row = ExperimentDB(
                id=experiment.id,
                name=experiment.name,
                description=experiment.description,
                status=experiment.status,
                audience=experiment.audience.model_dump() if experiment.audience else None,
                start_date=experiment.start_date,
                end_date=experiment.end_date,
                created_by=experiment.created_by,
                created_at=experiment.created_at,
                updated_at=experiment.updated_at,
                variants=[
                    VariantDB(
                        id=v.id,
                        position=position,
                        name=v.name,
                        description=v.description,
                        allocation=v.allocation,
                        is_control=v.is_control,
                        config=v.config
                    )
                    for position, v in enumerate(experiment.variants)
                ]
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ConflictError(f"Experiment {experiment.id} already exists") from e
            db.refresh(row)
            return Experiment.model_validate(row)

    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        with self._session() as db:
            row = db.get(ExperimentDB, experiment_id)
            return Experiment.model_validate(row) if row else None

    def list_experiments(
        self,
        status: Optional[ExperimentStatus] = None,
        page: int = 1,
        page_size: int = 10
    ) -> Tuple[List[Experiment], int]:
        with self._session() as db:
            query = db.query(ExperimentDB)
            if status:
                query = query.filter(ExperimentDB.status == status)

            total = query.count()
            rows = query.order_by(ExperimentDB.created_at.desc())\
                .offset((page - 1) * page_size)\
                .limit(page_size)\
                .all()
            return [Experiment.model_validate(r) for r in rows], total

    def update_experiment(self, experiment_id: str, changes: Dict[str, Any]) -> Experiment:
        values = {k: v for k, v in changes.items() if k in UPDATABLE_FIELDS}
        if "audience" in values and values["audience"] is not None:
            values["audience"] = values["audience"].model_dump()
        values["updated_at"] = datetime.now(timezone.utc)

        with self._session() as db:
            updated = db.query(ExperimentDB).filter(
                ExperimentDB.id == experiment_id,
                ExperimentDB.status.notin_(list(TERMINAL_STATUSES))
            ).update(values, synchronize_session=False)
            db.commit()

            row = db.get(ExperimentDB, experiment_id)
            if not row:
                raise NotFoundError(f"Experiment {experiment_id} not found")
            if not updated:
                raise ConflictError(
                    f"Cannot update experiment {experiment_id} in status {row.status.value}"
                )
            return Experiment.model_validate(row)

    def compare_and_set_status(
        self,
        experiment_id: str,
        expected: ExperimentStatus,
        target: ExperimentStatus,
        changes: Optional[Dict[str, Any]] = None
    ) -> Experiment:
        values = dict(changes or {})
        values["status"] = target
        values["updated_at"] = datetime.now(timezone.utc)

        with self._session() as db:
            updated = db.query(ExperimentDB).filter(
                ExperimentDB.id == experiment_id,
                ExperimentDB.status == expected
            ).update(values, synchronize_session=False)
            db.commit()

            row = db.get(ExperimentDB, experiment_id)
            if not row:
                raise NotFoundError(f"Experiment {experiment_id} not found")
            if not updated:
                raise ConflictError(
                    f"Experiment {experiment_id} is {row.status.value}, expected {expected.value}"
                )
            return Experiment.model_validate(row)

    def delete_experiment(self, experiment_id: str) -> bool:
        with self._session() as db:
            row = db.get(ExperimentDB, experiment_id)
            if not row:
                return False
            if row.status == ExperimentStatus.RUNNING:
                raise ConflictError(f"Cannot delete running experiment {experiment_id}")

            # Explicit child deletes; SQLite does not enforce ON DELETE CASCADE by default
            db.query(ConversionDB).filter(ConversionDB.experiment_id == experiment_id)\
                .delete(synchronize_session=False)
            db.query(AssignmentDB).filter(AssignmentDB.experiment_id == experiment_id)\
                .delete(synchronize_session=False)
            db.query(VariantDB).filter(VariantDB.experiment_id == experiment_id)\
                .delete(synchronize_session=False)
            deleted = db.query(ExperimentDB).filter(
                ExperimentDB.id == experiment_id,
                ExperimentDB.status != ExperimentStatus.RUNNING
            ).delete(synchronize_session=False)

            if not deleted:
                # Started between the read and the delete
                db.rollback()
                raise ConflictError(f"Cannot delete running experiment {experiment_id}")
            db.commit()
            return True

    def get_assignment(self, experiment_id: str, user_id: str) -> Optional[Assignment]:
        with self._session() as db:
            row = self._find_assignment(db, experiment_id, user_id)
            return Assignment.model_validate(row) if row else None

    def create_assignment_if_absent(self, experiment_id: str, user_id: str, variant_id: str) -> Assignment:
        with self._session() as db:
            row = AssignmentDB(
                id=str(uuid.uuid4()),
                experiment_id=experiment_id,
                variant_id=variant_id,
                user_id=user_id,
                assigned_at=datetime.now(timezone.utc)
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError as e:
                # Lost the race: return the row that won
                db.rollback()
                winner = self._find_assignment(db, experiment_id, user_id)
                if winner is None:
                    raise StoreError(
                        f"Assignment insert for {experiment_id}:{user_id} failed: {e.orig}"
                    ) from e
                return Assignment.model_validate(winner)

            db.refresh(row)
            return Assignment.model_validate(row)

    def record_conversion(self, conversion: Conversion) -> Conversion:
        with self._session() as db:
            row = ConversionDB(
                id=conversion.id,
                experiment_id=conversion.experiment_id,
                variant_id=conversion.variant_id,
                user_id=conversion.user_id,
                event_type=conversion.event_type,
                value=conversion.value,
                metadata_=conversion.metadata,
                created_at=conversion.created_at
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return self._to_conversion(row)

    def count_assignments(self, experiment_id: str, variant_id: str) -> int:
        with self._session() as db:
            return db.query(func.count(AssignmentDB.id)).filter(
                AssignmentDB.experiment_id == experiment_id,
                AssignmentDB.variant_id == variant_id
            ).scalar() or 0

    def count_unique_converters(self, experiment_id: str, variant_id: str) -> int:
        with self._session() as db:
            return db.query(func.count(distinct(ConversionDB.user_id))).filter(
                ConversionDB.experiment_id == experiment_id,
                ConversionDB.variant_id == variant_id
            ).scalar() or 0

    @staticmethod
    def _find_assignment(db: Session, experiment_id: str, user_id: str) -> Optional[AssignmentDB]:
        return db.query(AssignmentDB).filter(
            AssignmentDB.experiment_id == experiment_id,
            AssignmentDB.user_id == user_id
        ).first()

    @staticmethod
    def _to_conversion(row: ConversionDB) -> Conversion:
        return Conversion(
            id=row.id,
            experiment_id=row.experiment_id,
            variant_id=row.variant_id,
            user_id=row.user_id,
            event_type=row.event_type,
            value=row.value,
            metadata=row.metadata_,
            created_at=row.created_at
        )
