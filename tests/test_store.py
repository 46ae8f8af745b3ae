"""Tests for the experiment stores (in-memory and SQL)."""
from datetime import datetime, timedelta, timezone
import uuid

import pytest

from abtest.exceptions import ConflictError, NotFoundError
from abtest.models import AssignmentDB
from abtest.schemas.assignment import Conversion
from abtest.schemas.experiment import (
    AudienceFilter,
    Experiment,
    ExperimentStatus,
    UpdateExperimentRequest,
    Variant,
)
from abtest.services.experiments import ExperimentService

from conftest import make_request

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _experiment(name="exp", status=ExperimentStatus.DRAFT, created_offset=0, audience=None):
    experiment_id = str(uuid.uuid4())
    created_at = BASE_TIME + timedelta(minutes=created_offset)
    return Experiment(
        id=experiment_id,
        name=name,
        status=status,
        variants=[
            Variant(id=str(uuid.uuid4()), experiment_id=experiment_id, name="control",
                    allocation=50, is_control=True, config={"color": "blue"}),
            Variant(id=str(uuid.uuid4()), experiment_id=experiment_id, name="treatment",
                    allocation=50, config={"color": "green"}),
        ],
        audience=audience,
        created_at=created_at,
        updated_at=created_at
    )


def _conversion(experiment, variant_id, user_id, event_type="purchase", value=None):
    return Conversion(
        id=str(uuid.uuid4()),
        experiment_id=experiment.id,
        variant_id=variant_id,
        user_id=user_id,
        event_type=event_type,
        value=value,
        metadata={"source": "test"},
        created_at=datetime.now(timezone.utc)
    )


def test_create_and_get_experiment(store):
    """Test that an experiment round-trips with ordered variants and audience."""
    experiment = _experiment(audience=AudienceFilter(user_ids=["u1", "u2"], percentage=25))
    store.create_experiment(experiment)

    fetched = store.get_experiment(experiment.id)

    assert fetched is not None
    assert fetched.name == "exp"
    assert fetched.status == ExperimentStatus.DRAFT
    assert [v.name for v in fetched.variants] == ["control", "treatment"]
    assert fetched.variants[0].is_control is True
    assert fetched.variants[1].config == {"color": "green"}
    assert fetched.audience.user_ids == ["u1", "u2"]
    assert fetched.audience.percentage == 25


def test_get_missing_experiment_returns_none(store):
    """Test that unknown ids return None rather than raising."""
    assert store.get_experiment("missing") is None


def test_create_duplicate_id_conflicts(store):
    """Test that reusing an experiment id is rejected."""
    experiment = _experiment()
    store.create_experiment(experiment)

    with pytest.raises(ConflictError):
        store.create_experiment(experiment)


def test_returned_experiment_is_a_copy(memory_store):
    """Test that mutating a returned experiment does not touch stored state."""
    experiment = _experiment()
    memory_store.create_experiment(experiment)

    fetched = memory_store.get_experiment(experiment.id)
    fetched.variants[0].config["color"] = "red"
    fetched.name = "changed"

    again = memory_store.get_experiment(experiment.id)
    assert again.name == "exp"
    assert again.variants[0].config == {"color": "blue"}


def test_update_does_not_share_caller_state(store):
    """Test that mutating the audience passed to an update leaves stored targeting alone."""
    experiment = _experiment()
    store.create_experiment(experiment)
    audience = AudienceFilter(user_ids=["alice"])

    store.update_experiment(experiment.id, {"audience": audience})
    audience.user_ids.append("mallory")

    assert store.get_experiment(experiment.id).audience.user_ids == ["alice"]


def test_service_update_request_is_not_aliased(memory_store):
    """Test that a request object reused after update_experiment cannot retarget the experiment."""
    service = ExperimentService(memory_store)
    experiment = service.create_experiment(make_request())
    request = UpdateExperimentRequest(audience=AudienceFilter(user_ids=["alice"]))

    service.update_experiment(experiment.id, request)
    request.audience.user_ids.append("mallory")

    assert memory_store.get_experiment(experiment.id).audience.user_ids == ["alice"]


def test_list_experiments_pagination(store):
    """Test newest-first ordering, page slicing and total count."""
    for i in range(5):
        store.create_experiment(_experiment(name=f"exp-{i}", created_offset=i))

    first, total = store.list_experiments(page=1, page_size=2)
    last, _ = store.list_experiments(page=3, page_size=2)
    beyond, _ = store.list_experiments(page=4, page_size=2)

    assert total == 5
    assert [e.name for e in first] == ["exp-4", "exp-3"]
    assert [e.name for e in last] == ["exp-0"]
    assert beyond == []


def test_list_experiments_status_filter(store):
    """Test that the status filter applies to both the page and the total."""
    store.create_experiment(_experiment(name="draft", created_offset=0))
    store.create_experiment(_experiment(name="running", status=ExperimentStatus.RUNNING, created_offset=1))
    store.create_experiment(_experiment(name="paused", status=ExperimentStatus.PAUSED, created_offset=2))

    experiments, total = store.list_experiments(status=ExperimentStatus.RUNNING)

    assert total == 1
    assert [e.name for e in experiments] == ["running"]


def test_update_experiment(store):
    """Test that only updatable fields change."""
    experiment = _experiment()
    store.create_experiment(experiment)

    updated = store.update_experiment(experiment.id, {
        "name": "renamed",
        "audience": AudienceFilter(percentage=10),
        "status": ExperimentStatus.RUNNING
    })

    assert updated.name == "renamed"
    assert updated.audience.percentage == 10
    assert updated.status == ExperimentStatus.DRAFT


@pytest.mark.parametrize("status", [ExperimentStatus.COMPLETED, ExperimentStatus.ARCHIVED])
def test_update_terminal_experiment_conflicts(store, status):
    """Test that completed and archived experiments are read-only."""
    experiment = _experiment(status=status)
    store.create_experiment(experiment)

    with pytest.raises(ConflictError):
        store.update_experiment(experiment.id, {"name": "renamed"})

    assert store.get_experiment(experiment.id).name == "exp"


def test_update_missing_experiment(store):
    """Test that updating an unknown id raises NotFoundError."""
    with pytest.raises(NotFoundError):
        store.update_experiment("missing", {"name": "x"})


def test_compare_and_set_status(store):
    """Test a successful check-and-set with extra field changes."""
    experiment = _experiment()
    store.create_experiment(experiment)
    start = datetime(2024, 2, 1, tzinfo=timezone.utc)

    updated = store.compare_and_set_status(
        experiment.id, ExperimentStatus.DRAFT, ExperimentStatus.RUNNING, {"start_date": start}
    )

    assert updated.status == ExperimentStatus.RUNNING
    assert updated.start_date.replace(tzinfo=timezone.utc) == start


def test_compare_and_set_status_stale_expected(store):
    """Test that a stale expected status loses and leaves the row untouched."""
    experiment = _experiment()
    store.create_experiment(experiment)
    store.compare_and_set_status(experiment.id, ExperimentStatus.DRAFT, ExperimentStatus.RUNNING)

    with pytest.raises(ConflictError):
        store.compare_and_set_status(experiment.id, ExperimentStatus.DRAFT, ExperimentStatus.COMPLETED)

    assert store.get_experiment(experiment.id).status == ExperimentStatus.RUNNING


def test_compare_and_set_status_missing(store):
    """Test that a missing experiment raises NotFoundError."""
    with pytest.raises(NotFoundError):
        store.compare_and_set_status("missing", ExperimentStatus.DRAFT, ExperimentStatus.RUNNING)


def test_delete_running_experiment_conflicts(store):
    """Test that a running experiment cannot be deleted."""
    experiment = _experiment(status=ExperimentStatus.RUNNING)
    store.create_experiment(experiment)

    with pytest.raises(ConflictError):
        store.delete_experiment(experiment.id)

    assert store.get_experiment(experiment.id) is not None


def test_delete_missing_experiment(store):
    """Test that deleting an unknown id reports False."""
    assert store.delete_experiment("missing") is False


def test_delete_cascades_to_assignments_and_conversions(store):
    """Test that delete removes the experiment and everything recorded for it."""
    experiment = _experiment(status=ExperimentStatus.PAUSED)
    other = _experiment(name="other", status=ExperimentStatus.PAUSED)
    store.create_experiment(experiment)
    store.create_experiment(other)
    variant_id = experiment.variants[0].id

    store.create_assignment_if_absent(experiment.id, "user-1", variant_id)
    store.record_conversion(_conversion(experiment, variant_id, "user-1"))
    store.create_assignment_if_absent(other.id, "user-1", other.variants[0].id)

    assert store.delete_experiment(experiment.id) is True

    assert store.get_experiment(experiment.id) is None
    assert store.get_assignment(experiment.id, "user-1") is None
    assert store.count_assignments(experiment.id, variant_id) == 0
    assert store.count_unique_converters(experiment.id, variant_id) == 0
    # Other experiments are untouched
    assert store.get_assignment(other.id, "user-1") is not None


def test_create_assignment_if_absent_keeps_first(store):
    """Test that a second create returns the first assignment unchanged."""
    experiment = _experiment(status=ExperimentStatus.RUNNING)
    store.create_experiment(experiment)
    control, treatment = experiment.variants

    first = store.create_assignment_if_absent(experiment.id, "user-1", control.id)
    second = store.create_assignment_if_absent(experiment.id, "user-1", treatment.id)

    assert second.variant_id == control.id
    assert second.id == first.id
    assert store.get_assignment(experiment.id, "user-1").variant_id == control.id
    assert store.count_assignments(experiment.id, control.id) == 1
    assert store.count_assignments(experiment.id, treatment.id) == 0


def test_sql_assignment_unique_violation_returns_winner(sql_store):
    """Test the IntegrityError path: a row inserted behind the store's back wins."""
    experiment = _experiment(status=ExperimentStatus.RUNNING)
    sql_store.create_experiment(experiment)
    control, treatment = experiment.variants

    with sql_store.session_factory() as db:
        db.add(AssignmentDB(
            id="winner",
            experiment_id=experiment.id,
            variant_id=treatment.id,
            user_id="user-1",
            assigned_at=datetime.now(timezone.utc)
        ))
        db.commit()

    assignment = sql_store.create_assignment_if_absent(experiment.id, "user-1", control.id)

    assert assignment.id == "winner"
    assert assignment.variant_id == treatment.id
    assert sql_store.count_assignments(experiment.id, control.id) == 0


def test_count_unique_converters(store):
    """Test that repeated conversions by one user count once."""
    experiment = _experiment(status=ExperimentStatus.RUNNING)
    store.create_experiment(experiment)
    control, treatment = experiment.variants

    for user in ("u1", "u2", "u3"):
        store.create_assignment_if_absent(experiment.id, user, control.id)
    store.create_assignment_if_absent(experiment.id, "u4", treatment.id)

    for _ in range(5):
        store.record_conversion(_conversion(experiment, control.id, "u1"))
    store.record_conversion(_conversion(experiment, control.id, "u2", event_type="signup"))

    assert store.count_assignments(experiment.id, control.id) == 3
    assert store.count_assignments(experiment.id, treatment.id) == 1
    assert store.count_unique_converters(experiment.id, control.id) == 2
    assert store.count_unique_converters(experiment.id, treatment.id) == 0


def test_record_conversion_keeps_metadata(store):
    """Test that value and metadata are stored as given."""
    experiment = _experiment(status=ExperimentStatus.RUNNING)
    store.create_experiment(experiment)

    stored = store.record_conversion(_conversion(experiment, experiment.variants[0].id, "u1", value=19.5))

    assert stored.value == 19.5
    assert stored.metadata == {"source": "test"}
    assert stored.event_type == "purchase"
