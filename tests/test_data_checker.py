"""Tests for the Data Checker fetch plans."""

import pytest

from conftest import NOW, FakeClock, add_user
from report_sync.config import SyncOptions
from report_sync.connectors.sqlite import SQLiteConnector
from report_sync.core.data_checker import DataChecker
from report_sync.core.interrupter import SyncInterrupter
from report_sync.core.public_colls_conf import PublicCollsConfAccessors
from report_sync.core.step_manager import StepManager
from report_sync.core.users import UserAuth
from report_sync.errors import SyncQueueIDSettingError
from report_sync.schema.registry import TableNames
from report_sync.schema.sync_schema import get_method_coll_map
from report_sync.utils.dates import MS_PER_MINUTE


COLL_MAP = get_method_coll_map()


def subset(*methods: str) -> dict:
    return {method: COLL_MAP[method] for method in methods}


@pytest.fixture
def step_manager(dao: SQLiteConnector, clock: FakeClock) -> StepManager:
    return StepManager(dao, clock=clock)


@pytest.fixture
def make_checker(dao: SQLiteConnector, step_manager: StepManager, clock: FakeClock):
    def factory(*methods: str, **kwargs) -> DataChecker:
        checker = DataChecker(
            dao,
            step_manager,
            method_coll_map=subset(*methods),
            clock=clock,
            **kwargs,
        )
        checker.init(1)
        return checker

    return factory


class InterruptingStepManager(StepManager):
    """Raises the interrupt flag after a number of checkpoint lookups."""

    def __init__(self, dao, interrupter: SyncInterrupter, after: int, **kwargs) -> None:
        super().__init__(dao, **kwargs)
        self.interrupter = interrupter
        self.after = after
        self.lookups = 0

    def get_last_synced_info_for_curr_coll(self, *args, **kwargs):
        info = super().get_last_synced_info_for_curr_coll(*args, **kwargs)
        self.lookups += 1
        if self.lookups == self.after:
            self.interrupter.interrupt()
        return info


def make_interrupted_checker(
    dao: SQLiteConnector, clock: FakeClock, *methods: str, after: int
) -> tuple[DataChecker, StepManager]:
    interrupter = SyncInterrupter()
    step_manager = InterruptingStepManager(dao, interrupter, after, clock=clock)
    checker = DataChecker(
        dao,
        step_manager,
        method_coll_map=subset(*methods),
        interrupter=interrupter,
        clock=clock,
    )
    checker.init(1)
    return checker, step_manager


def mark_synced(step_manager: StepManager, step) -> None:
    step_manager.update_step(
        step, {"is_base_step_ready": True, "is_curr_step_ready": True}
    )


class TestInitialization:
    """Tests for the sync run binding."""

    def test_check_before_init(self, dao: SQLiteConnector, step_manager: StepManager) -> None:
        checker = DataChecker(dao, step_manager)
        with pytest.raises(SyncQueueIDSettingError):
            checker.check_new_data(UserAuth(user_id=1))
        with pytest.raises(SyncQueueIDSettingError):
            checker.check_new_public_data()

    def test_init_validates_id(self, dao: SQLiteConnector, step_manager: StepManager) -> None:
        checker = DataChecker(dao, step_manager)
        with pytest.raises(SyncQueueIDSettingError):
            checker.init(None)

    def test_init_binds_step_manager(self, make_checker, step_manager: StepManager) -> None:
        make_checker("getLedgers")
        assert step_manager.sync_queue_id == 1


class TestPrivateCollections:
    """Plans for per-user collections."""

    def test_first_sync(self, make_checker, user_id: int) -> None:
        """A new checkpoint is pushed with a fresh window from the start of time."""
        plan = make_checker("getLedgers", "getCurrencies").check_new_data(UserAuth(user_id=user_id))

        assert list(plan) == ["getLedgers"]
        created, fresh = plan["getLedgers"].start
        assert not created.is_base_step_ready
        assert fresh.curr_start == 0
        assert fresh.curr_end == NOW
        assert not fresh.is_curr_step_ready

    def test_fresh_window_starts_at_last_stored_row(
        self, make_checker, dao: SQLiteConnector, user_id: int
    ) -> None:
        dao.insert_elem_to_db(
            TableNames.LEDGERS,
            {"id": 1, "user_id": user_id, "mts": NOW - 1000, "currency": "BTC"},
        )
        plan = make_checker("getLedgers").check_new_data(UserAuth(user_id=user_id))

        fresh = plan["getLedgers"].start[-1]
        assert fresh.curr_start == NOW - 1000

    @pytest.mark.parametrize(
        ("lag_minutes", "expected_steps"),
        [(30, 1), (60, 1), (61, 2)],
    )
    def test_freshness_gap(
        self,
        make_checker,
        step_manager: StepManager,
        user_id: int,
        lag_minutes: int,
        expected_steps: int,
    ) -> None:
        """A fresh window is added only when the gap exceeds the allowance."""
        checker = make_checker("getLedgers")
        step = checker.check_new_data(UserAuth(user_id=user_id))["getLedgers"].start[0]
        step_manager.update_step(
            step,
            {
                "is_base_step_ready": True,
                "curr_start": 0,
                "curr_end": NOW - lag_minutes * MS_PER_MINUTE,
                "is_curr_step_ready": False,
            },
        )

        plan = checker.check_new_data(UserAuth(user_id=user_id))
        assert len(plan["getLedgers"].start) == expected_steps

    def test_sub_account_scope(self, make_checker, sub_account_ids) -> None:
        master, sub_a, _ = sub_account_ids
        plan = make_checker("getLedgers").check_new_data(
            UserAuth(user_id=master, sub_user_id=sub_a)
        )
        step = plan["getLedgers"].start[0]
        assert (step.user_id, step.sub_user_id) == (master, sub_a)

    def test_interrupted(self, make_checker, dao: SQLiteConnector, user_id: int) -> None:
        interrupter = SyncInterrupter()
        interrupter.interrupt()

        plan = make_checker("getLedgers", interrupter=interrupter).check_new_data(
            UserAuth(user_id=user_id)
        )

        assert plan == {}
        assert dao.get_row_count(TableNames.SYNC_USER_STEPS) == 0

    def test_interrupted_between_methods(
        self, dao: SQLiteConnector, clock: FakeClock, user_id: int
    ) -> None:
        """The plan computed before the interruption is kept."""
        checker, step_manager = make_interrupted_checker(
            dao, clock, "getLedgers", "getTrades", after=1
        )

        plan = checker.check_new_data(UserAuth(user_id=user_id))

        assert list(plan) == ["getLedgers"]
        assert plan["getLedgers"].has_new_data
        assert len(step_manager.get_steps(coll_name="getLedgers")) == 1
        assert step_manager.get_steps(coll_name="getTrades") == []


class TestCandlesFromLedgers:
    """Candles needed to convert ledger currencies."""

    @pytest.fixture
    def ledgers(self, dao: SQLiteConnector, user_id: int) -> None:
        dao.insert_elems_to_db(
            TableNames.LEDGERS,
            [
                {"id": 1, "user_id": user_id, "mts": 100, "currency": "USD"},
                {"id": 2, "user_id": user_id, "mts": 1000, "currency": "BTCF0"},
                {"id": 3, "user_id": user_id, "mts": 2000, "currency": "MATIC"},
            ],
        )

    def test_candles_pairs(self, make_checker, ledgers) -> None:
        checker = make_checker("getCandles")
        assert checker._get_candles_pairs() == [
            "tBTCUSD",
            "tMATIC:USD",
            "tBTCEUR",
            "tBTCJPY",
            "tBTCGBP",
        ]

    def test_currency_synonyms(self, make_checker, ledgers) -> None:
        checker = make_checker("getCandles", currency_synonyms={"MATIC": ["POL"]})
        assert "tPOLUSD" in checker._get_candles_pairs()

    def test_first_ledger_ignores_convert_currency(self, make_checker, ledgers) -> None:
        assert make_checker("getCandles")._get_first_ledger_mts() == 1000

    def test_plan_starts_at_first_ledger(self, make_checker, ledgers) -> None:
        plan = make_checker("getCandles").check_new_public_data()

        fresh = [
            s for s in plan["getCandles"].start
            if s.symbol == "tMATIC:USD" and s.has_curr_step
        ]
        assert len(fresh) == 1
        assert fresh[0].timeframe == "1D"
        assert fresh[0].curr_start == 1000
        assert fresh[0].curr_end == NOW

    def test_no_ledgers_no_candles(self, make_checker) -> None:
        assert make_checker("getCandles").check_new_public_data() == {}

    def test_interrupted_between_symbols(
        self, dao: SQLiteConnector, clock: FakeClock, ledgers
    ) -> None:
        checker, step_manager = make_interrupted_checker(dao, clock, "getCandles", after=2)

        plan = checker.check_new_public_data()

        assert {s.symbol for s in plan["getCandles"].start} == {"tBTCUSD", "tMATIC:USD"}
        assert {s.symbol for s in step_manager.get_steps(coll_name="getCandles")} == {
            "tBTCUSD",
            "tMATIC:USD",
        }


class TestConfigurablePublicCollections:
    """Plans driven by the public collections configuration."""

    START = NOW - 30 * 24 * 60 * MS_PER_MINUTE

    @pytest.fixture
    def accessors(self, dao: SQLiteConnector) -> PublicCollsConfAccessors:
        return PublicCollsConfAccessors(dao)

    def _configure_candles(self, accessors, user_id: int, start: int) -> None:
        accessors.edit_public_colls_conf(
            "candlesConf",
            user_id,
            [{"symbol": "tETHUSD", "timeframe": "1h", "start": start}],
        )

    def test_new_conf_gets_base_window(self, make_checker, accessors, user_id: int) -> None:
        self._configure_candles(accessors, user_id, self.START)

        plan = make_checker("getCandles").check_new_public_data()

        (step,) = plan["getCandles"].start
        assert (step.symbol, step.timeframe) == ("tETHUSD", "1h")
        assert (step.base_start, step.base_end) == (self.START, NOW)
        assert not step.is_base_step_ready

    @pytest.mark.parametrize(
        ("drift_minutes", "widened"),
        [(4, False), (5, False), (6, True)],
    )
    def test_start_drift(
        self,
        make_checker,
        accessors,
        step_manager: StepManager,
        user_id: int,
        drift_minutes: int,
        widened: bool,
    ) -> None:
        """Moving the configured start back beyond the allowance widens the base window."""
        self._configure_candles(accessors, user_id, self.START)
        checker = make_checker("getCandles")
        (step,) = checker.check_new_public_data()["getCandles"].start
        mark_synced(step_manager, step)

        new_start = self.START - drift_minutes * MS_PER_MINUTE
        self._configure_candles(accessors, user_id, new_start)
        (derived,) = checker.check_new_public_data()["getCandles"].start

        if widened:
            assert (derived.base_start, derived.base_end) == (new_start, self.START)
            assert not derived.is_base_step_ready
        else:
            assert derived.base_start == self.START
            assert derived.is_base_step_ready
        # Both windows were ready, so a fresh window is always due
        assert not derived.is_curr_step_ready
        assert derived.curr_end == NOW

    def test_custom_drift_allowance(
        self, make_checker, accessors, step_manager: StepManager, user_id: int
    ) -> None:
        self._configure_candles(accessors, user_id, self.START)
        checker = make_checker(
            "getCandles", options=SyncOptions(allowed_start_drift_minutes=10)
        )
        (step,) = checker.check_new_public_data()["getCandles"].start
        mark_synced(step_manager, step)

        self._configure_candles(accessors, user_id, self.START - 6 * MS_PER_MINUTE)
        (derived,) = checker.check_new_public_data()["getCandles"].start
        assert derived.is_base_step_ready

    def test_smallest_start_of_all_users(
        self, make_checker, accessors, dao: SQLiteConnector, user_id: int
    ) -> None:
        """Confs of several users share one checkpoint from the earliest start."""
        other = add_user(dao, "other@example.com")
        self._configure_candles(accessors, user_id, self.START)
        self._configure_candles(accessors, other, self.START - 1000)

        (step,) = make_checker("getCandles").check_new_public_data()["getCandles"].start
        assert step.base_start == self.START - 1000

    def test_updatable_conf(
        self, make_checker, accessors, step_manager: StepManager, user_id: int
    ) -> None:
        """Status messages are re-fetched from the configured start."""
        accessors.edit_public_colls_conf(
            "statusMessagesConf", user_id, [{"symbol": "tBTCF0:USTF0", "start": 500}]
        )
        checker = make_checker("getStatusMessages")

        (step,) = checker.check_new_public_data()["getStatusMessages"].start
        assert step.symbol == "tBTCF0:USTF0"
        assert not step.has_base_step
        mark_synced(step_manager, step)

        (derived,) = checker.check_new_public_data()["getStatusMessages"].start
        assert derived.curr_start == 500
        assert not derived.is_curr_step_ready

    def test_interrupted_between_groups(
        self, dao: SQLiteConnector, clock: FakeClock, accessors, user_id: int
    ) -> None:
        """Later groups and collections are left for the next run."""
        accessors.edit_public_colls_conf(
            "candlesConf",
            user_id,
            [
                {"symbol": "tBTCUSD", "timeframe": "1h", "start": self.START},
                {"symbol": "tETHUSD", "timeframe": "1h", "start": self.START},
            ],
        )
        accessors.edit_public_colls_conf(
            "statusMessagesConf", user_id, [{"symbol": "tBTCF0:USTF0", "start": 500}]
        )
        checker, step_manager = make_interrupted_checker(
            dao, clock, "getCandles", "getStatusMessages", after=1
        )

        plan = checker.check_new_public_data()

        assert list(plan) == ["getCandles"]
        (step,) = plan["getCandles"].start
        assert step.symbol == "tBTCUSD"
        assert step_manager.get_steps(coll_name="getStatusMessages") == []


class TestPublicMonoliths:
    """Collections fetched as a whole."""

    def test_monolith_refetched_every_sync(
        self, make_checker, step_manager: StepManager
    ) -> None:
        checker = make_checker("getCurrencies", "getSymbols")

        plan = checker.check_new_public_data()
        assert set(plan) == {"getCurrencies", "getSymbols"}
        for checked in plan.values():
            (step,) = checked.start
            mark_synced(step_manager, step)

        plan = checker.check_new_public_data()
        (derived,) = plan["getCurrencies"].start
        assert derived.is_base_step_ready
        assert not derived.is_curr_step_ready

    def test_public_plan_excludes_private(self, make_checker, user_id: int) -> None:
        plan = make_checker("getLedgers", "getCurrencies").check_new_public_data()
        assert list(plan) == ["getCurrencies"]
