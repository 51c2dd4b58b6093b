"""Tests for the flag and experiment service facade."""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from experiments_core.core.errors import ErrorCodes, InternalError, NotFoundError, RequestValidationError, StoreError
from experiments_core.models.context import UserContext
from experiments_core.models.experiment import ExperimentStatus, RecommendedAction
from experiments_core.models.flag import FlagStatus, FlagType, SegmentRules
from experiments_core.models.schemas import CreateOverrideRequest, TrackEventRequest, UpdateFlagRequest
from experiments_core.services.experiments_service import ExperimentsService, parse_expiry
from experiments_core.services.flag_evaluation import EvaluationSource


def _override(**fields):
    return CreateOverrideRequest(subject_id="user-1", **fields)


@pytest.fixture
def wrapped_store(store):
    return Mock(wraps=store)


@pytest.fixture
def counted_service(wrapped_store, clock, timer):
    return ExperimentsService(wrapped_store, cache_ttl_seconds=30.0, clock=clock, timer=timer)


class TestFlagAdministration:
    """Tests for flag create/update/toggle/archive."""

    def test_create_flag(self, service, make_flag_request, clock):
        """Test created flags are active and immediately evaluable."""
        flag = service.create_flag("admin-1", make_flag_request(enabled=True, tags=["checkout"]))
        assert flag.status == FlagStatus.ACTIVE
        assert flag.flag_type == FlagType.BOOLEAN
        assert flag.created_by == "admin-1"
        assert flag.created_at == clock.now
        assert service.is_enabled("new_checkout") is True

    def test_duplicate_flag_key(self, service, make_flag_request):
        """Test flag keys are unique."""
        service.create_flag(None, make_flag_request())
        with pytest.raises(RequestValidationError) as exc_info:
            service.create_flag(None, make_flag_request())
        assert exc_info.value.code == ErrorCodes.VALIDATION_ERROR

    def test_update_invalidates_cache(self, counted_service, wrapped_store, make_flag_request):
        """Test an update followed by a read triggers exactly one reload."""
        counted_service.create_flag(None, make_flag_request(enabled=False))
        assert counted_service.is_enabled("new_checkout") is False
        reloads = wrapped_store.list_active_flags.call_count

        counted_service.update_flag("new_checkout", UpdateFlagRequest(enabled=True))
        assert counted_service.is_enabled("new_checkout") is True
        assert wrapped_store.list_active_flags.call_count == reloads + 1

    def test_reads_within_ttl_do_not_reload(self, counted_service, wrapped_store, make_flag_request, timer):
        """Test evaluation serves from the snapshot inside the TTL."""
        counted_service.create_flag(None, make_flag_request(enabled=True))
        counted_service.evaluate_flag("new_checkout")
        for _ in range(10):
            timer.advance(2)
            counted_service.evaluate_flag("new_checkout", UserContext(subject_id="user-1"))
        assert wrapped_store.list_active_flags.call_count == 1

    def test_update_only_set_fields(self, service, make_flag_request):
        """Test unset fields are left unchanged."""
        service.create_flag(None, make_flag_request(description="original", tags=["a"]))
        updated = service.update_flag("new_checkout", UpdateFlagRequest(name="Renamed"))
        assert updated.name == "Renamed"
        assert updated.description == "original"
        assert updated.tags == ["a"]

    def test_update_segment_rules(self, service, make_flag_request):
        """Test segment rules can be replaced and cleared."""
        service.create_flag(None, make_flag_request(flag_type="segment", segment_rules=SegmentRules(roles=["rider"])))
        updated = service.update_flag("new_checkout", UpdateFlagRequest(segment_rules=SegmentRules(roles=["driver"])))
        assert updated.segment_rules.roles == ["driver"]
        cleared = service.update_flag("new_checkout", UpdateFlagRequest(segment_rules=None))
        assert cleared.segment_rules is None

    def test_toggle_flag(self, service, make_flag_request):
        """Test toggle sets the static value."""
        service.create_flag(None, make_flag_request(enabled=False))
        assert service.toggle_flag("new_checkout", True).enabled is True
        assert service.is_enabled("new_checkout") is True
        assert service.toggle_flag("new_checkout", False).enabled is False
        assert service.is_enabled("new_checkout") is False

    def test_toggle_flag_is_idempotent(self, service, make_flag_request):
        """Test repeating a toggle with the same value leaves the flag unchanged."""
        service.create_flag(None, make_flag_request(enabled=False))
        service.toggle_flag("new_checkout", True)
        assert service.toggle_flag("new_checkout", True).enabled is True
        assert service.get_flag("new_checkout").enabled is True
        assert service.is_enabled("new_checkout") is True

    def test_archive_flag(self, service, make_flag_request):
        """Test archived flags evaluate as not found."""
        service.create_flag(None, make_flag_request(enabled=True))
        service.evaluate_flag("new_checkout")
        service.archive_flag("new_checkout")
        assert service.get_flag("new_checkout").status == FlagStatus.ARCHIVED
        assert service.evaluate_flag("new_checkout").source == EvaluationSource.NOT_FOUND

    def test_archived_flag_cannot_change(self, service, make_flag_request):
        """Test updates and toggles of archived flags are rejected."""
        service.create_flag(None, make_flag_request())
        service.archive_flag("new_checkout")
        with pytest.raises(RequestValidationError):
            service.toggle_flag("new_checkout", True)
        with pytest.raises(RequestValidationError):
            service.update_flag("new_checkout", UpdateFlagRequest(enabled=True))

    def test_unknown_flag_admin_ops(self, service):
        """Test direct operations on unknown flags raise not found."""
        with pytest.raises(NotFoundError):
            service.get_flag("missing")
        with pytest.raises(NotFoundError):
            service.toggle_flag("missing", True)
        with pytest.raises(NotFoundError):
            service.archive_flag("missing")

    def test_list_flags(self, service, make_flag_request, clock):
        """Test listing newest first with status filter and paging."""
        for i in range(3):
            service.create_flag(None, make_flag_request(key=f"flag_{i}"))
            clock.advance(seconds=1)
        service.archive_flag("flag_0")

        assert [f.key for f in service.list_flags()] == ["flag_2", "flag_1", "flag_0"]
        assert [f.key for f in service.list_flags(status=FlagStatus.ACTIVE)] == ["flag_2", "flag_1"]
        assert [f.key for f in service.list_flags(limit=1, offset=1)] == ["flag_1"]

    def test_store_failure_surfaces_as_internal_error(self, counted_service, wrapped_store, make_flag_request):
        """Test admin writes report dependency failures."""
        wrapped_store.create_flag.side_effect = StoreError("database unavailable")
        with pytest.raises(InternalError) as exc_info:
            counted_service.create_flag(None, make_flag_request())
        assert exc_info.value.code == ErrorCodes.INTERNAL_ERROR
        assert isinstance(exc_info.value.__cause__, StoreError)


class TestFlagEvaluation:
    """Tests for evaluation through the facade."""

    def test_unknown_flag(self, service):
        """Test unknown flags return not found without raising."""
        result = service.evaluate_flag("missing", UserContext(subject_id="user-1"))
        assert result.enabled is False
        assert result.source == EvaluationSource.NOT_FOUND

    def test_evaluate_flags(self, service, make_flag_request):
        """Test batch evaluation returns a result per key."""
        service.create_flag(None, make_flag_request(key="a", enabled=True))
        service.create_flag(None, make_flag_request(key="b", flag_type="percentage", rollout_percentage=100))
        results = service.evaluate_flags(["a", "b", "c"], UserContext(subject_id="user-1"))
        assert results["a"].enabled is True
        assert results["b"].source == EvaluationSource.PERCENTAGE
        assert results["c"].source == EvaluationSource.NOT_FOUND

    def test_evaluation_survives_store_outage(self, counted_service, wrapped_store, make_flag_request):
        """Test evaluation degrades instead of raising when the store is down."""
        counted_service.create_flag(None, make_flag_request(enabled=True))
        wrapped_store.list_active_flags.side_effect = StoreError("database unavailable")
        wrapped_store.get_flag_by_key.side_effect = StoreError("database unavailable")
        assert counted_service.is_enabled("new_checkout", UserContext(subject_id="user-1")) is False


class TestOverrides:
    """Tests for override administration."""

    def test_override_wins(self, service, make_flag_request):
        """Test an override beats the flag's rollout."""
        service.create_flag(None, make_flag_request(flag_type="percentage", rollout_percentage=0))
        service.create_override("admin-1", "new_checkout", _override(enabled=True, reason="beta"))
        result = service.evaluate_flag("new_checkout", UserContext(subject_id="user-1"))
        assert result.enabled is True
        assert result.source == EvaluationSource.OVERRIDE

    def test_override_does_not_invalidate_cache(self, counted_service, wrapped_store, make_flag_request):
        """Test override writes leave the flag snapshot alone."""
        counted_service.create_flag(None, make_flag_request())
        counted_service.evaluate_flag("new_checkout")
        counted_service.create_override(None, "new_checkout", _override(enabled=True, reason="qa"))
        assert counted_service.is_enabled("new_checkout", UserContext(subject_id="user-1")) is True
        assert wrapped_store.list_active_flags.call_count == 1

    def test_override_replaced(self, service, make_flag_request):
        """Test a second override for the same subject replaces the first."""
        service.create_flag(None, make_flag_request())
        first = service.create_override(None, "new_checkout", _override(enabled=True, reason="a"))
        second = service.create_override(None, "new_checkout", _override(enabled=False, reason="b"))
        overrides = service.list_overrides("new_checkout")
        assert len(overrides) == 1
        assert overrides[0].enabled is False
        assert second.id == first.id

    def test_override_expiry(self, service, make_flag_request, clock):
        """Test an override stops applying once expired."""
        service.create_flag(None, make_flag_request(enabled=False))
        expires = (clock.now + timedelta(hours=2)).isoformat()
        service.create_override(
            None, "new_checkout", _override(enabled=True, reason="trial", expires_at=expires)
        )
        ctx = UserContext(subject_id="user-1")
        assert service.is_enabled("new_checkout", ctx) is True
        clock.advance(hours=3)
        assert service.is_enabled("new_checkout", ctx) is False

    def test_malformed_expiry_rejected(self, service, make_flag_request):
        """Test an unparsable expiry is a validation error."""
        service.create_flag(None, make_flag_request())
        with pytest.raises(RequestValidationError):
            service.create_override(
                None, "new_checkout", _override(reason="x", expires_at="next tuesday")
            )

    def test_override_unknown_flag(self, service):
        """Test overrides need an existing flag."""
        with pytest.raises(NotFoundError):
            service.create_override(None, "missing", _override(reason="x"))

    def test_delete_override(self, service, make_flag_request):
        """Test deleting an override and deleting it again."""
        service.create_flag(None, make_flag_request())
        service.create_override(None, "new_checkout", _override(enabled=True, reason="x"))
        service.delete_override("new_checkout", "user-1")
        assert service.list_overrides("new_checkout") == []
        with pytest.raises(NotFoundError):
            service.delete_override("new_checkout", "user-1")


class TestParseExpiry:
    """Tests for expiry parsing."""

    def test_empty(self):
        assert parse_expiry(None) is None
        assert parse_expiry("") is None

    def test_zulu_suffix(self):
        assert parse_expiry("2026-03-01T10:00:00Z") == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)

    def test_offset_kept(self):
        parsed = parse_expiry("2026-03-01T12:00:00+02:00")
        assert parsed == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        assert parse_expiry("2026-03-01T10:00:00").tzinfo == timezone.utc

    def test_invalid(self):
        with pytest.raises(RequestValidationError) as exc_info:
            parse_expiry("not-a-date")
        assert exc_info.value.details == {"expires_at": "not-a-date"}


class TestExperiments:
    """Tests for experiment operations through the facade."""

    def test_full_experiment_flow(self, service, make_experiment_request):
        """Test create, start, assign, track and analyze."""
        experiment, variants = service.create_experiment("admin-1", make_experiment_request(min_sample_size=100))
        service.start_experiment(experiment.id)

        for i in range(600):
            subject = f"rider-{i}"
            variant = service.get_variant_for_user(experiment.key, UserContext(subject_id=subject))
            service.track_event(subject, TrackEventRequest(experiment_key=experiment.key, event_type="impression"))
            # Treatment converts every third subject, control every tenth
            if variant.key == "treatment" and i % 3 == 0 or variant.key == "control" and i % 10 == 0:
                service.track_event(
                    subject,
                    TrackEventRequest(experiment_key=experiment.key, event_type="conversion", event_value=20.0),
                )

        results = service.get_results(experiment.id)
        assert results.experiment.id == experiment.id
        assert [m.variant_key for m in results.variants] == ["control", "treatment"]
        assert sum(m.sample_size for m in results.variants) == 600
        assert results.can_conclude is True
        assert results.is_significant is True
        assert results.recommended_action == RecommendedAction.CONCLUDE_WINNER
        assert results.winner == "treatment"
        assert all(m.avg_event_value == pytest.approx(20.0) for m in results.variants)

    def test_results_continue_below_sample_size(self, service, make_experiment_request):
        """Test an experiment without enough subjects keeps running."""
        experiment, _ = service.create_experiment(None, make_experiment_request())
        service.start_experiment(experiment.id)
        for i in range(20):
            service.get_variant_for_user(experiment.key, UserContext(subject_id=f"rider-{i}"))
        results = service.get_results(experiment.id)
        assert results.can_conclude is False
        assert results.recommended_action == RecommendedAction.CONTINUE

    def test_track_event_not_enrolled(self, service, make_experiment_request):
        """Test tracking for a subject outside the experiment succeeds quietly."""
        experiment, _ = service.create_experiment(None, make_experiment_request())
        service.start_experiment(experiment.id)
        request = TrackEventRequest(experiment_key=experiment.key, event_type="conversion")
        recorded = service.track_event("stranger", request)
        assert recorded is False
        assert all(m.conversions == 0 for m in service.get_results(experiment.id).variants)

    def test_get_experiment(self, service, make_experiment_request):
        """Test lookup by key returns variants control first."""
        service.create_experiment(None, make_experiment_request())
        experiment, variants = service.get_experiment("checkout_button")
        assert experiment.key == "checkout_button"
        assert variants[0].is_control is True
        assert variants[1].config == {"color": "green"}

    def test_get_unknown_experiment(self, service):
        """Test direct lookups of unknown experiments raise not found."""
        with pytest.raises(NotFoundError):
            service.get_experiment("missing")
        with pytest.raises(NotFoundError):
            service.get_results("missing-id")

    def test_lifecycle_through_facade(self, service, make_experiment_request):
        """Test the facade exposes every transition."""
        experiment, _ = service.create_experiment(None, make_experiment_request())
        assert service.start_experiment(experiment.id).status == ExperimentStatus.RUNNING
        assert service.list_running_experiments()[0].id == experiment.id
        assert service.pause_experiment(experiment.id).status == ExperimentStatus.PAUSED
        assert service.list_running_experiments() == []
        assert service.conclude_experiment(experiment.id).status == ExperimentStatus.COMPLETED
        assert service.archive_experiment(experiment.id).status == ExperimentStatus.ARCHIVED

    def test_list_experiments(self, service, make_experiment_request, clock):
        """Test listing with a status filter."""
        first, _ = service.create_experiment(None, make_experiment_request(key="exp_a"))
        clock.advance(seconds=1)
        service.create_experiment(None, make_experiment_request(key="exp_b"))
        service.start_experiment(first.id)

        assert [e.key for e in service.list_experiments()] == ["exp_b", "exp_a"]
        assert [e.key for e in service.list_experiments(status=ExperimentStatus.RUNNING)] == ["exp_a"]

    def test_assignment_counts(self, service, make_experiment_request):
        """Test counts per variant add up to assigned subjects."""
        experiment, variants = service.create_experiment(None, make_experiment_request())
        service.start_experiment(experiment.id)
        for i in range(100):
            service.get_variant_for_user(experiment.key, UserContext(subject_id=f"rider-{i}"))
        counts = service.get_assignment_counts(experiment.id)
        assert set(counts) <= {v.id for v in variants}
        assert sum(counts.values()) == 100

    def test_invalid_transition_surfaces(self, service, make_experiment_request):
        """Test lifecycle validation errors pass through unchanged."""
        experiment, _ = service.create_experiment(None, make_experiment_request())
        with pytest.raises(RequestValidationError) as exc_info:
            service.pause_experiment(experiment.id)
        assert exc_info.value.code == ErrorCodes.INVALID_TRANSITION
