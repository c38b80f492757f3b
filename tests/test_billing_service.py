"""
Billing log store: charges, settlement, filtering and CSV export
"""

from datetime import datetime, timedelta

import pytest

from models.mysql_models import MAX_PAISE, BillingLog, WalletAccount, WalletTransaction
from services.billing_service import BillingService, LogFilters, format_csv_time, format_major_units
from services.errors import InsufficientFundsError, NoPlanAvailableError, NotFoundError, ValidationError
from services.wallet_service import WalletService

START = datetime(2024, 3, 5, 10, 30, 15, 123000)


def _charge(service, user, conversation_id, category="utility", charge_mode="none", start=START, **kwargs):
    return service.record_charge(
        user_id=user.id,
        conversation_id=conversation_id,
        category=category,
        recipient_number="+919800000001",
        start_time=start,
        end_time=start + timedelta(hours=24),
        charge_mode=charge_mode,
        **kwargs
    )


def _balances(session, user_id):
    session.expire_all()
    account = session.query(WalletAccount).filter(WalletAccount.user_id == user_id).one()
    return account.balance_paise, account.suspense_balance_paise


@pytest.fixture
def billed_user(make_user, make_plan, assign):
    user = make_user()
    assign(user, make_plan("Standard", utility=100, marketing=150, authentication=80, service=120))
    return user


class TestRecordCharge:
    """One log per conversation, priced from the user's plan"""

    def test_amount_defaults_to_resolved_price(self, db_session, billed_user):
        log = _charge(BillingService(db_session), billed_user, "conv-1", category="marketing")

        assert log.amount_paise == 150
        assert log.amount_currency == "INR"
        assert log.billing_status == "pending"
        assert log.wallet_tx_id is None

    def test_explicit_amount_and_country(self, db_session, billed_user):
        log = _charge(
            BillingService(db_session), billed_user, "conv-1",
            amount_paise=77, country_code="in", country_name="India"
        )
        assert log.amount_paise == 77
        assert log.country_code == "IN"

    def test_duplicate_conversation_is_noop(self, db_session, billed_user):
        service = BillingService(db_session)
        WalletService(db_session).recharge(billed_user.id, 1000)

        first = _charge(service, billed_user, "conv-dup", charge_mode="debit")
        second = _charge(service, billed_user, "conv-dup", charge_mode="debit", category="marketing")

        assert first.id == second.id
        assert second.category == "utility"
        assert db_session.query(BillingLog).count() == 1
        assert _balances(db_session, billed_user.id) == (900, 0)

    def test_same_conversation_for_another_user(self, db_session, billed_user, make_user, make_plan):
        make_plan("Fallback", is_default=True)
        other = make_user()
        service = BillingService(db_session)

        _charge(service, billed_user, "shared")
        _charge(service, other, "shared")

        assert db_session.query(BillingLog).filter(BillingLog.conversation_id == "shared").count() == 2

    def test_debit_marks_paid(self, db_session, billed_user):
        WalletService(db_session).recharge(billed_user.id, 1000)

        log = _charge(BillingService(db_session), billed_user, "conv-1", charge_mode="debit")

        assert log.billing_status == "paid"
        tx = db_session.get(WalletTransaction, log.wallet_tx_id)
        assert tx.type == "DEBIT"
        assert tx.transaction_id == f"BL-{billed_user.id}-conv-1"
        assert _balances(db_session, billed_user.id) == (900, 0)

    def test_insufficient_funds_leaves_no_log(self, db_session, billed_user):
        WalletService(db_session).recharge(billed_user.id, 50)

        with pytest.raises(InsufficientFundsError):
            _charge(BillingService(db_session), billed_user, "conv-poor", charge_mode="debit")

        assert db_session.query(BillingLog).count() == 0
        assert _balances(db_session, billed_user.id) == (50, 0)

    def test_hold_moves_amount_to_suspense(self, db_session, billed_user):
        WalletService(db_session).recharge(billed_user.id, 1000)

        log = _charge(BillingService(db_session), billed_user, "conv-1", charge_mode="hold")

        assert log.billing_status == "pending"
        assert _balances(db_session, billed_user.id) == (900, 100)

    def test_long_conversation_id_gets_hashed_tx_id(self, db_session, billed_user):
        WalletService(db_session).recharge(billed_user.id, 1000)
        conversation_id = "c" * 70

        log = _charge(BillingService(db_session), billed_user, conversation_id, charge_mode="debit")

        tx = db_session.get(WalletTransaction, log.wallet_tx_id)
        assert tx.transaction_id.startswith("BL-")
        assert len(tx.transaction_id) <= 64

    def test_end_before_start_rejected(self, db_session, billed_user):
        with pytest.raises(ValidationError):
            BillingService(db_session).record_charge(
                user_id=billed_user.id,
                conversation_id="backwards",
                category="utility",
                recipient_number="1",
                start_time=START,
                end_time=START - timedelta(seconds=1)
            )

    def test_invalid_category_and_mode(self, db_session, billed_user):
        service = BillingService(db_session)
        with pytest.raises(ValidationError):
            _charge(service, billed_user, "x", category="promo")
        with pytest.raises(ValidationError):
            _charge(service, billed_user, "x", charge_mode="later")

    def test_amount_above_column_range_rejected(self, db_session, billed_user):
        with pytest.raises(ValidationError):
            _charge(BillingService(db_session), billed_user, "conv-1", amount_paise=MAX_PAISE + 1)
        assert db_session.query(BillingLog).count() == 0

    def test_no_plan_available(self, db_session, make_user):
        with pytest.raises(NoPlanAvailableError):
            _charge(BillingService(db_session), make_user(), "conv-1")


class TestSettleCharge:
    """Pending logs transition exactly once"""

    def test_delivered_keeps_hold_and_marks_paid(self, db_session, billed_user):
        WalletService(db_session).recharge(billed_user.id, 1000)
        service = BillingService(db_session)
        _charge(service, billed_user, "conv-1", charge_mode="hold")

        log = service.settle_charge(billed_user.id, "conv-1", delivered=True)

        assert log.billing_status == "paid"
        assert _balances(db_session, billed_user.id) == (900, 100)

    def test_failed_releases_hold(self, db_session, billed_user):
        WalletService(db_session).recharge(billed_user.id, 1000)
        service = BillingService(db_session)
        _charge(service, billed_user, "conv-1", charge_mode="hold")

        log = service.settle_charge(billed_user.id, "conv-1", delivered=False)

        assert log.billing_status == "failed"
        assert _balances(db_session, billed_user.id) == (1000, 0)
        refund = db_session.query(WalletTransaction).filter(
            WalletTransaction.transaction_id == f"SR-{billed_user.id}-conv-1"
        ).one()
        assert refund.type == "SUSPENSE_REFUND"

    def test_terminal_status_never_changes(self, db_session, billed_user):
        WalletService(db_session).recharge(billed_user.id, 1000)
        service = BillingService(db_session)
        _charge(service, billed_user, "conv-1", charge_mode="hold")
        service.settle_charge(billed_user.id, "conv-1", delivered=False)

        log = service.settle_charge(billed_user.id, "conv-1", delivered=True)

        assert log.billing_status == "failed"
        assert _balances(db_session, billed_user.id) == (1000, 0)

    def test_failed_without_hold(self, db_session, billed_user):
        service = BillingService(db_session)
        _charge(service, billed_user, "conv-1")

        assert service.settle_charge(billed_user.id, "conv-1", delivered=False).billing_status == "failed"

    def test_settle_by_opening_message_id(self, db_session, billed_user):
        WalletService(db_session).recharge(billed_user.id, 1000)
        service = BillingService(db_session)
        _charge(service, billed_user, "conv-1", charge_mode="hold", message_id="wamid.1")

        log = service.settle_charge(billed_user.id, "wamid.1", delivered=False, message_id="wamid.1")

        assert log.conversation_id == "conv-1"
        assert log.billing_status == "failed"
        assert _balances(db_session, billed_user.id) == (1000, 0)
        assert db_session.query(WalletTransaction).filter(
            WalletTransaction.transaction_id == f"SR-{billed_user.id}-conv-1"
        ).count() == 1

    def test_unknown_charge_not_found(self, db_session, billed_user):
        with pytest.raises(NotFoundError):
            BillingService(db_session).settle_charge(billed_user.id, "nope", delivered=True, message_id="wamid.x")


class TestQueries:
    """Filters, pagination, statistics and CSV"""

    @pytest.fixture
    def logs(self, db_session, billed_user):
        service = BillingService(db_session)
        _charge(service, billed_user, "alpha-1", category="utility", start=datetime(2024, 1, 10, 8, 0))
        _charge(service, billed_user, "alpha-2", category="marketing", start=datetime(2024, 1, 20, 23, 30),
                country_name="United Arab Emirates", country_code="AE")
        _charge(service, billed_user, "beta-1", category="marketing", start=datetime(2024, 2, 1, 9, 0))
        service.settle_charge(billed_user.id, "beta-1", delivered=False)
        return service

    def test_list_is_newest_first(self, logs, billed_user):
        result = logs.list_logs([billed_user.id])

        assert [log.conversation_id for log in result["logs"]] == ["beta-1", "alpha-2", "alpha-1"]
        assert result["pagination"] == {"page": 1, "limit": 20, "total": 3, "pages": 1}

    def test_search_matches_substrings(self, logs, billed_user):
        assert logs.list_logs([billed_user.id], LogFilters(search="alpha"))["pagination"]["total"] == 2
        assert logs.list_logs([billed_user.id], LogFilters(search="arab"))["pagination"]["total"] == 1

    def test_category_and_status_filters(self, logs, billed_user):
        result = logs.list_logs([billed_user.id], LogFilters(category="marketing", billing_status="failed"))
        assert [log.conversation_id for log in result["logs"]] == ["beta-1"]

        with pytest.raises(ValidationError):
            logs.list_logs([billed_user.id], LogFilters(billing_status="refunded"))

    def test_date_only_end_covers_the_whole_day(self, logs, billed_user):
        result = logs.list_logs([billed_user.id], LogFilters(start_date="2024-01-20", end_date="2024-01-20"))
        assert [log.conversation_id for log in result["logs"]] == ["alpha-2"]

    def test_invalid_date(self, logs, billed_user):
        with pytest.raises(ValidationError):
            logs.list_logs([billed_user.id], LogFilters(start_date="not-a-date"))

    def test_scope_excludes_other_users(self, logs, make_user):
        assert logs.list_logs([make_user().id])["pagination"]["total"] == 0
        assert logs.list_logs(None)["pagination"]["total"] == 3

    def test_statistics_cover_every_category(self, logs, billed_user):
        stats = logs.statistics([billed_user.id])

        assert stats["utility"] == {"count": 1, "amount": 100}
        assert stats["marketing"] == {"count": 2, "amount": 300}
        assert stats["authentication"] == {"count": 0, "amount": 0}
        assert stats["service"] == {"count": 0, "amount": 0}

    def test_statistics_follow_filters(self, logs, billed_user):
        stats = logs.statistics([billed_user.id], LogFilters(search="alpha"))
        assert stats["marketing"] == {"count": 1, "amount": 150}

    def test_paging(self, logs, billed_user):
        result = logs.list_logs([billed_user.id], page=2, limit=2)
        assert [log.conversation_id for log in result["logs"]] == ["alpha-1"]
        assert result["pagination"]["pages"] == 2

    def test_csv_export(self, db_session, billed_user):
        service = BillingService(db_session)
        _charge(service, billed_user, "conv-csv", country_name="India")

        assert service.export_csv([billed_user.id]) == (
            '"conversation_id","category","recipient_number","start_time","end_time",'
            '"billing_status","amount","currency","country"\n'
            '"conv-csv","utility","+919800000001","2024-03-05T10:30:15.123Z","2024-03-06T10:30:15.123Z",'
            '"pending","1.000","INR","India"\n'
        )

    def test_csv_export_with_user_column(self, db_session, billed_user):
        service = BillingService(db_session)
        _charge(service, billed_user, "conv-csv")

        lines = service.export_csv(None, include_user_id=True).splitlines()
        assert lines[0].startswith('"user_id","conversation_id"')
        assert lines[1].startswith(f'"{billed_user.id}","conv-csv"')
        assert lines[1].endswith('"INR",""')

    def test_empty_export_has_header_only(self, db_session, make_user):
        assert BillingService(db_session).export_csv([make_user().id]).count("\n") == 1


class TestFormatting:
    @pytest.mark.parametrize("paise, expected", [(0, "0.000"), (100, "1.000"), (1234, "12.340"), (5, "0.050")])
    def test_major_units(self, paise, expected):
        assert format_major_units(paise) == expected

    def test_csv_time(self):
        assert format_csv_time(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02T03:04:05.000Z"
        assert format_csv_time(None) == ""
