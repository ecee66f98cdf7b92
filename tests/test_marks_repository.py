import pytest
from sqlalchemy.orm import sessionmaker

from marksapi.core.exceptions import (
    ConflictingWithdrawalError,
    DuplicateNonceError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    NotFoundError,
)
from marksapi.models.marks import MarkTransactionStatus, MarkTransactionType
from marksapi.repositories.marks_repository import Completed, Failed, MarksRepository
from marksapi.schemas.marks import WithdrawalRecord
from marksapi.utils.conversion import convert

VALID_ADDRESS = "0x" + "ab" * 20


@pytest.fixture
def repo(db_session):
    return MarksRepository(db_session)


def _reserve(repo, user_id, marks=500, nonce="nonce-0001", **kwargs):
    return repo.reserve_for_withdrawal(
        user_id=user_id,
        marks=marks,
        wallet_address=VALID_ADDRESS,
        nonce=nonce,
        conversion=convert(marks),
        **kwargs,
    )


class TestReserveForWithdrawal:
    def test_reserve_debits_immediately(self, repo, make_user):
        user = make_user(marks=500)

        record = _reserve(repo, user.id)

        assert record.status == MarkTransactionStatus.PROCESSING
        assert record.marks_amount == -500
        assert record.net_external_minor_units == str(4 * 10**18)
        assert repo.get_balance(user.id) == 0

    def test_insufficient_balance_changes_nothing(self, repo, make_user):
        user = make_user(marks=499)

        with pytest.raises(InsufficientBalanceError):
            _reserve(repo, user.id)

        assert repo.get_balance(user.id) == 499
        assert repo.list_withdrawals() == []

    def test_duplicate_nonce(self, repo, make_user):
        user = make_user(marks=500)
        record = _reserve(repo, user.id)
        repo.finalize_withdrawal(record.id, Failed("rejected"))

        with pytest.raises(DuplicateNonceError):
            _reserve(repo, user.id)

        assert repo.get_balance(user.id) == 500

    def test_one_active_withdrawal_per_user(self, repo, make_user):
        user = make_user(marks=500)
        _reserve(repo, user.id, status=MarkTransactionStatus.PENDING)

        with pytest.raises(ConflictingWithdrawalError):
            _reserve(repo, user.id, nonce="nonce-0002")

    def test_unknown_user(self, repo):
        with pytest.raises(NotFoundError):
            _reserve(repo, 999)


class TestFinalizeWithdrawal:
    def test_completed_keeps_balance(self, repo, make_user):
        user = make_user(marks=500)
        record = _reserve(repo, user.id)

        result = repo.finalize_withdrawal(record.id, Completed("0xabc"))

        assert result.status == MarkTransactionStatus.COMPLETED
        assert result.external_tx_ref == "0xabc"
        assert repo.get_balance(user.id) == 0

    def test_failed_refunds(self, repo, make_user):
        user = make_user(marks=500)
        record = _reserve(repo, user.id)

        result = repo.finalize_withdrawal(record.id, Failed("insufficient treasury"))

        assert result.status == MarkTransactionStatus.FAILED
        assert result.failure_reason == "insufficient treasury"
        assert repo.get_balance(user.id) == 500

    def test_same_outcome_twice_is_noop(self, repo, make_user):
        user = make_user(marks=500)
        record = _reserve(repo, user.id)

        repo.finalize_withdrawal(record.id, Failed("boom"))
        again = repo.finalize_withdrawal(record.id, Failed("boom"))

        assert again.status == MarkTransactionStatus.FAILED
        # 환불은 한 번만
        assert repo.get_balance(user.id) == 500

    def test_conflicting_outcome_refused(self, repo, make_user):
        user = make_user(marks=500)
        record = _reserve(repo, user.id)
        repo.finalize_withdrawal(record.id, Completed("0xabc"))

        with pytest.raises(InvalidStateTransitionError):
            repo.finalize_withdrawal(record.id, Failed("late failure"))

        assert repo.get_balance(user.id) == 0

    def test_reject_refunds_as_cancelled(self, repo, make_user):
        user = make_user(marks=500)
        record = _reserve(repo, user.id, status=MarkTransactionStatus.PENDING)

        result = repo.reject_withdrawal(record.id, reason="suspicious")

        assert result.status == MarkTransactionStatus.CANCELLED
        assert repo.get_balance(user.id) == 500


class TestCreditMarks:
    def test_credit_capped_at_max(self, repo, make_user):
        user = make_user(marks=495)

        result = repo.credit_marks(user.id, 9, MarkTransactionType.SURVEY_HELP)

        assert result.credited == 5
        assert result.capped is True
        assert result.new_balance == 500

    def test_credit_at_cap_records_zero(self, repo, make_user):
        user = make_user(marks=500)

        result = repo.credit_marks(
            user.id, 9, MarkTransactionType.SURVEY_HELP, nonce="help-1"
        )

        assert result.credited == 0
        assert repo.get_transaction_by_nonce("help-1").marks_amount == 0
        assert repo.get_balance(user.id) == 500

    def test_credit_idempotent_on_nonce(self, repo, make_user):
        user = make_user(marks=0)

        first = repo.credit_marks(user.id, 50, MarkTransactionType.PURCHASE, nonce="purchase:tx1")
        second = repo.credit_marks(user.id, 50, MarkTransactionType.PURCHASE, nonce="purchase:tx1")

        assert first.credited == 50
        assert second.already_processed is True
        assert second.transaction_id == first.transaction_id
        assert repo.get_balance(user.id) == 50

    def test_reserved_marks_count_toward_cap(self, repo, make_user):
        """진행 중 출금이 실패 환불되어도 한도를 넘지 않음"""
        user = make_user(marks=500)
        record = _reserve(repo, user.id)

        credit = repo.credit_marks(user.id, 100, MarkTransactionType.SURVEY_HELP)
        repo.finalize_withdrawal(record.id, Failed("rejected"))

        assert credit.credited == 0
        assert repo.get_balance(user.id) == 500

    def test_require_full_changes_nothing(self, repo, make_user):
        user = make_user(marks=450)

        result = repo.credit_marks(
            user.id, 100, MarkTransactionType.PURCHASE, nonce="purchase:tx2", require_full=True
        )

        assert result.credited == 0
        assert repo.get_transaction_by_nonce("purchase:tx2") is None
        assert repo.get_balance(user.id) == 450


class TestSurveyHelpAndCommission:
    def test_commission_recorded_once_per_survey(self, repo, make_user):
        first_helper = make_user()
        second_helper = make_user()

        _, first_recorded = repo.credit_survey_help(first_helper.id, 7, 9, 4)
        _, second_recorded = repo.credit_survey_help(second_helper.id, 7, 9, 4)

        assert first_recorded is True
        assert second_recorded is False
        commission = repo.get_transaction_by_nonce("commission:survey:7")
        assert commission.marks_amount == 4
        assert commission.user_id is None

    def test_record_commission_standalone(self, repo):
        row, created = repo.record_commission(8, 12, {"boost_marks": 300})
        again, created_again = repo.record_commission(8, 12)

        assert created is True
        assert created_again is False
        assert again.id == row.id


class TestDebitAndIntegrity:
    def test_debit_insufficient(self, repo, make_user):
        user = make_user(marks=10)

        with pytest.raises(InsufficientBalanceError):
            repo.debit_marks(user.id, 100, MarkTransactionType.SURVEY_BOOST, "survey_boost:1")

        assert repo.get_balance(user.id) == 10

    def test_integrity_after_mixed_operations(self, repo, make_user):
        user = make_user(marks=0)
        repo.credit_marks(user.id, 300, MarkTransactionType.PURCHASE, nonce="purchase:a")
        repo.credit_marks(user.id, 200, MarkTransactionType.PURCHASE, nonce="purchase:b")
        failed = _reserve(repo, user.id, nonce="nonce-fail")
        repo.finalize_withdrawal(failed.id, Failed("rejected"))
        _reserve(repo, user.id, nonce="nonce-open")

        result = repo.verify_user_integrity(user.id)

        assert result.status == "OK"
        assert result.balance == 0
        assert result.completed_total == 500
        assert result.reserved_total == -500

    def test_history_newest_first(self, repo, make_user):
        user = make_user(marks=0)
        repo.credit_marks(user.id, 10, MarkTransactionType.PURCHASE, nonce="purchase:1")
        repo.credit_marks(user.id, 20, MarkTransactionType.PURCHASE, nonce="purchase:2")

        history = repo.list_user_transactions(user.id, limit=1)

        assert history.total_count == 2
        assert history.has_next is True
        assert history.balance == 30


class TestConcurrentReservation:
    """두 요청이 같은 사용자 잔액을 동시에 출금하려는 경우"""

    @pytest.fixture
    def other_repo(self, engine):
        # 별도 세션 = 별도 요청
        session = sessionmaker(bind=engine, expire_on_commit=False)()
        yield MarksRepository(session)
        session.close()

    @staticmethod
    def _stale_on_first_call(monkeypatch, repo, name):
        """잠금 안의 첫 조회만 경쟁 요청의 커밋 이전 상태(None)를 보게 함"""
        real = getattr(repo, name)
        calls = {"n": 0}

        def lookup(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return real(*args, **kwargs)

        monkeypatch.setattr(repo, name, lookup)

    def test_one_of_two_withdrawals_wins(self, repo, other_repo, make_user):
        # Given
        user = make_user(marks=500)
        outcomes = []

        # When
        for r, nonce in ((repo, "nonce-a"), (other_repo, "nonce-b")):
            try:
                outcomes.append(_reserve(r, user.id, nonce=nonce))
            except (ConflictingWithdrawalError, InsufficientBalanceError) as e:
                outcomes.append(e)

        # Then
        assert isinstance(outcomes[0], WithdrawalRecord)
        assert isinstance(outcomes[1], (ConflictingWithdrawalError, InsufficientBalanceError))
        assert other_repo.get_balance(user.id) == 0
        assert other_repo.verify_user_integrity(user.id).status == "OK"

    def test_lost_active_check_still_cannot_overdraw(
        self, repo, other_repo, make_user, monkeypatch
    ):
        # Given
        user = make_user(marks=500)
        _reserve(repo, user.id, nonce="nonce-a")
        self._stale_on_first_call(monkeypatch, other_repo, "_active_withdrawal")

        # When / Then
        with pytest.raises(InsufficientBalanceError):
            _reserve(other_repo, user.id, nonce="nonce-b")

        assert other_repo.get_balance(user.id) == 0
        assert other_repo.get_transaction_by_nonce("nonce-b") is None

    def test_unique_active_index_maps_to_conflict(
        self, repo, other_repo, make_user, monkeypatch
    ):
        # Given - 잔액은 두 건 모두 가능하지만 진행 중 출금은 1건만 허용
        user = make_user(marks=1000)
        first = _reserve(repo, user.id, nonce="nonce-a")
        self._stale_on_first_call(monkeypatch, other_repo, "_active_withdrawal")

        # When
        with pytest.raises(ConflictingWithdrawalError):
            _reserve(other_repo, user.id, nonce="nonce-b")

        # Then - 두 번째 요청의 차감은 롤백됨
        assert other_repo.get_balance(user.id) == 500
        assert other_repo.get_transaction_by_nonce("nonce-b") is None
        assert other_repo.get_transaction_by_nonce("nonce-a").id == first.id

    def test_unique_nonce_maps_to_duplicate(
        self, repo, other_repo, make_user, monkeypatch
    ):
        # Given - 다른 사용자가 같은 nonce 로 동시에 요청
        alice = make_user(marks=500)
        bob = make_user(marks=500)
        _reserve(repo, alice.id, nonce="nonce-shared")
        self._stale_on_first_call(monkeypatch, other_repo, "_find_by_nonce")

        # When
        with pytest.raises(DuplicateNonceError):
            _reserve(other_repo, bob.id, nonce="nonce-shared")

        # Then
        assert other_repo.get_balance(bob.id) == 500
        assert other_repo.get_balance(alice.id) == 0
