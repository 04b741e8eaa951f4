"""
Tests for board reservations.

These prove:
- The conditional write lets exactly one of two racing reservations through
- Releases are counted and repeated releases start a cooldown
"""
import pytest
from datetime import timedelta

from app.models.domain import Driver, Load
from app.models.enums import LoadStatus, RefusalReason
from app.services.errors import RefusalError
from app.services.rate_limit import RateLimiter
from app.services.reservations import ReservationService


class TestReserve:

    def test_reserve_holds_the_load(self, db_session, ctx, make_load, clock):
        load = make_load()

        ReservationService(db_session, ctx).reserve(load.id, "driver_1")

        db_session.refresh(load)
        assert load.status == LoadStatus.RESERVED
        assert load.reserved_by == "driver_1"
        assert load.reserved_until == clock() + timedelta(seconds=180)

    def test_two_simultaneous_reservations_one_wins(self, session_factory, ctx, make_load):
        """
        INVARIANT: At most one reservation holder per load.

        Both sessions read the load as available before either writes.
        """
        load = make_load()
        first_db, second_db = session_factory(), session_factory()
        try:
            assert first_db.get(Load, load.id).status == LoadStatus.AVAILABLE
            assert second_db.get(Load, load.id).status == LoadStatus.AVAILABLE

            ReservationService(first_db, ctx).reserve(load.id, "driver_1")
            with pytest.raises(RefusalError) as exc_info:
                ReservationService(second_db, ctx).reserve(load.id, "driver_2")

            assert exc_info.value.reason == RefusalReason.UNAVAILABLE
        finally:
            first_db.close()
            second_db.close()

        check = session_factory()
        assert check.get(Load, load.id).reserved_by == "driver_1"
        check.close()

    def test_unknown_load(self, db_session, ctx):
        with pytest.raises(RefusalError) as exc_info:
            ReservationService(db_session, ctx).reserve(999, "driver_1")

        assert exc_info.value.reason == RefusalReason.LOAD_NOT_FOUND

    def test_driver_on_a_mission_cannot_reserve(self, db_session, ctx, make_load, mission):
        other = make_load()

        with pytest.raises(RefusalError) as exc_info:
            ReservationService(db_session, ctx).reserve(other.id, "driver_1")

        assert exc_info.value.reason == RefusalReason.ALREADY_ON_MISSION
        db_session.refresh(other)
        assert other.status == LoadStatus.AVAILABLE

    def test_rapid_repeat_is_rate_limited(self, db_session, ctx, make_load):
        ticks = iter([100.0, 100.5])
        ctx.rate_limiter = RateLimiter(2.0, monotonic=lambda: next(ticks))
        first, second = make_load(), make_load()

        ReservationService(db_session, ctx).reserve(first.id, "driver_1")
        with pytest.raises(RefusalError) as exc_info:
            ReservationService(db_session, ctx).reserve(second.id, "driver_1")

        assert exc_info.value.reason == RefusalReason.RATE_LIMITED
        db_session.refresh(second)
        assert second.status == LoadStatus.AVAILABLE

    def test_reserving_ends_an_open_outage(self, db_session, ctx, make_load, make_driver, clock):
        make_driver("driver_1", disconnected_at=clock())
        clock.advance(minutes=20)

        ReservationService(db_session, ctx).reserve(make_load().id, "driver_1")

        driver = db_session.get(Driver, "driver_1")
        db_session.refresh(driver)
        assert driver.disconnected_at is None
        assert driver.last_seen_at == clock()


class TestRelease:

    def test_release_returns_load_to_board(self, db_session, ctx, make_load):
        load = make_load()
        service = ReservationService(db_session, ctx)
        service.reserve(load.id, "driver_1")

        result = service.cancel_reservation(load.id, "driver_1")

        db_session.refresh(load)
        assert load.status == LoadStatus.AVAILABLE
        assert load.reserved_by is None
        assert result.releases == 1

    def test_only_the_holder_can_release(self, db_session, ctx, make_load):
        load = make_load()
        service = ReservationService(db_session, ctx)
        service.reserve(load.id, "driver_1")

        with pytest.raises(RefusalError) as exc_info:
            service.cancel_reservation(load.id, "driver_2")

        assert exc_info.value.reason == RefusalReason.NOT_RESERVATION_HOLDER
        db_session.refresh(load)
        assert load.reserved_by == "driver_1"

    def test_third_release_warns(self, db_session, ctx, make_load, notifications):
        service = ReservationService(db_session, ctx)
        for _ in range(3):
            load = make_load()
            service.reserve(load.id, "driver_1")
            service.cancel_reservation(load.id, "driver_1")

        assert notifications.titles_for("driver_1") == ["Reservation Warning"]

    def test_five_releases_block_tier_2_until_cooldown_ends(self, db_session, ctx, make_load, clock):
        """
        INVARIANT: Five consecutive releases block tier 2+ reservations until
        the cooldown elapses, and the counter resets.
        """
        service = ReservationService(db_session, ctx)
        for _ in range(5):
            load = make_load()
            service.reserve(load.id, "driver_1")
            result = service.cancel_reservation(load.id, "driver_1")

        assert result.releases == 5
        assert result.cooldown_until == clock() + timedelta(seconds=600)
        assert db_session.get(Driver, "driver_1").reservation_releases == 0

        tier_2 = make_load(tier=2)
        with pytest.raises(RefusalError) as exc_info:
            service.reserve(tier_2.id, "driver_1")
        assert exc_info.value.reason == RefusalReason.RESERVATION_COOLDOWN

        # Lower tiers stay open during the cooldown
        tier_1 = make_load(tier=1)
        service.reserve(tier_1.id, "driver_1")
        service.cancel_reservation(tier_1.id, "driver_1")

        clock.advance(seconds=601)
        service.reserve(tier_2.id, "driver_1")
        db_session.refresh(tier_2)
        assert tier_2.reserved_by == "driver_1"
