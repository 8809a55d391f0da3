"""
Tests for settlement verification
"""

import asyncio
import pytest
from datetime import timedelta
from decimal import Decimal

from paylink.errors import RecipientMismatch, TokenMismatch
from paylink.models import FeeTransactionStatus, RequestStatus, Transfer, VerificationStatus
from paylink.settlement.verifier import match_transfer
from tests.conftest import (
    START,
    bundled_usdc_lcx_receipt,
    erc20,
    make_receipt,
    tx_hash,
    units,
)
from tests.factories import (
    OTHER_PAYER,
    PAYER,
    RECEIVER,
    SEPOLIA_LCX,
    SEPOLIA_USDC,
    SEPOLIA_USDT,
    TREASURY,
)


async def new_request(core, **overrides):
    fields = {"amount": "10", "token": "USDC", "receiver": RECEIVER, "network": "sepolia"}
    fields.update(overrides)
    return await core.create_request(**fields)


def usdc_fee_receipt(tx, amount="10", fee="0.3", reward="0.3", payer=PAYER):
    """Payment and both fee legs in USDC (fallback path)"""
    return make_receipt(
        tx,
        transfers=[
            erc20(SEPOLIA_USDC, payer, RECEIVER, units(amount, 6), tx),
            erc20(SEPOLIA_USDC, payer, TREASURY, units(fee, 6), tx),
            erc20(SEPOLIA_USDC, payer, RECEIVER, units(reward, 6), tx),
        ],
        sender=payer,
        to=SEPOLIA_USDC,
    )


class TestMatchTransfer:
    def expected(self):
        return Transfer(
            description="Payment",
            token="USDC",
            token_address=SEPOLIA_USDC,
            decimals=6,
            amount=Decimal("10"),
            to=RECEIVER,
        )

    def test_picks_exact_transfer(self):
        candidates = [
            erc20(SEPOLIA_USDC, PAYER, RECEIVER, units("0.3", 6)),
            erc20(SEPOLIA_USDC, PAYER, RECEIVER, units("10", 6)),
        ]

        assert match_transfer(self.expected(), candidates).value == 10_000_000

    def test_token_checked_before_recipient(self):
        candidates = [erc20(SEPOLIA_USDT, PAYER, TREASURY, units("10", 6))]

        with pytest.raises(TokenMismatch):
            match_transfer(self.expected(), candidates)

    def test_recipient_mismatch_details(self):
        candidates = [erc20(SEPOLIA_USDC, PAYER, TREASURY, units("10", 6))]

        with pytest.raises(RecipientMismatch) as exc_info:
            match_transfer(self.expected(), candidates)

        assert exc_info.value.details["found_recipients"] == [TREASURY]
        assert exc_info.value.details["expected"]["to"] == RECEIVER


class TestVerifyPaid:
    @pytest.mark.asyncio
    async def test_bundled_transaction_settles(self, core, balances, receipts, sink, store):
        balances.set(PAYER, "10")
        request = await new_request(core)
        receipts.add(bundled_usdc_lcx_receipt(tx_hash(1)))

        verdict = await core.verify(request.id, tx_hash(1), payer_agent_id="agent-42")

        assert verdict.status is VerificationStatus.PAID
        assert verdict.details["payer"] == PAYER
        assert len(verdict.details["transfers"]) == 3
        assert verdict.request.status is RequestStatus.PAID
        assert verdict.request.tx_hash == tx_hash(1)
        assert verdict.request.fee_tx_hash == tx_hash(1)
        assert verdict.request.payer_agent_id == "agent-42"
        assert verdict.fee_transaction.status is FeeTransactionStatus.COLLECTED
        assert verdict.fee_transaction.quote.fee_token == "LCX"
        assert receipts.calls == [tx_hash(1)]
        assert sink.names() == ["payment.created", "payment.paid"]

    @pytest.mark.asyncio
    async def test_fallback_fee_in_payment_token(self, core, receipts):
        request = await new_request(core)
        quote = await core.quote(request.id, PAYER)
        assert quote.quote.fee_token == "USDC"
        receipts.add(usdc_fee_receipt(tx_hash(1)))

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.paid

    @pytest.mark.asyncio
    async def test_payment_transfer_cannot_double_as_reward(self, core, receipts):
        request = await new_request(core)
        receipts.add(make_receipt(
            tx_hash(1),
            transfers=[
                erc20(SEPOLIA_USDC, PAYER, RECEIVER, units("10", 6)),
                erc20(SEPOLIA_USDC, PAYER, TREASURY, units("0.3", 6)),
            ],
        ))

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.reason == "RecipientMismatch"

    @pytest.mark.asyncio
    async def test_separate_fee_transactions(self, core, balances, receipts):
        balances.set(PAYER, "10")
        request = await new_request(core)
        receipts.add(make_receipt(tx_hash(1), transfers=[erc20(SEPOLIA_USDC, PAYER, RECEIVER, units("10", 6))]))
        receipts.add(make_receipt(tx_hash(2), transfers=[erc20(SEPOLIA_LCX, PAYER, TREASURY, units("2", 18))]))
        receipts.add(make_receipt(tx_hash(3), transfers=[erc20(SEPOLIA_LCX, PAYER, RECEIVER, units("2", 18))]))

        verdict = await core.verify(
            request.id, tx_hash(1), fee_tx_hash=tx_hash(2), creator_reward_tx_hash=tx_hash(3)
        )

        assert verdict.paid
        assert verdict.request.fee_tx_hash == tx_hash(2)
        assert verdict.request.creator_reward_tx_hash == tx_hash(3)
        assert sorted(receipts.calls) == [tx_hash(1), tx_hash(2), tx_hash(3)]

    @pytest.mark.asyncio
    async def test_native_eth_payment(self, core, balances, receipts):
        balances.set(PAYER, "10")
        request = await new_request(core, amount="0.5", token="ETH")
        receipts.add(make_receipt(
            tx_hash(1),
            transfers=[
                erc20(SEPOLIA_LCX, PAYER, TREASURY, units("2", 18)),
                erc20(SEPOLIA_LCX, PAYER, RECEIVER, units("2", 18)),
            ],
            value=units("0.5", 18),
            to=RECEIVER,
        ))

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.paid

    @pytest.mark.asyncio
    async def test_upper_case_hash_is_normalized(self, core, balances, receipts):
        balances.set(PAYER, "10")
        request = await new_request(core)
        receipts.add(bundled_usdc_lcx_receipt(tx_hash(0xABC)))

        verdict = await core.verify(request.id, "0x" + tx_hash(0xABC)[2:].upper())

        assert verdict.paid
        assert verdict.request.tx_hash == tx_hash(0xABC)

    @pytest.mark.asyncio
    async def test_verifies_against_locked_quote(self, core, balances, receipts, prices):
        request = await new_request(core)
        await core.quote(request.id, PAYER)

        # Price and balance move after the quote was shown
        prices.prices["LCX"] = Decimal("0.30")
        balances.set(PAYER, "100")
        receipts.add(usdc_fee_receipt(tx_hash(1)))

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.paid
        assert verdict.fee_transaction.quote.fee_total == Decimal("0.6")

    @pytest.mark.asyncio
    async def test_siblings_fail_when_one_payer_settles(self, core, receipts, store):
        request = await new_request(core)
        mine = await core.quote(request.id, PAYER)
        theirs = await core.quote(request.id, OTHER_PAYER)
        receipts.add(usdc_fee_receipt(tx_hash(1)))

        await core.verify(request.id, tx_hash(1))

        assert store.fee_transactions[mine.fee_transaction_id].status is FeeTransactionStatus.COLLECTED
        assert store.fee_transactions[theirs.fee_transaction_id].status is FeeTransactionStatus.FAILED

    @pytest.mark.asyncio
    async def test_mined_before_expiry_settles_late(self, core, receipts, wall_clock):
        request = await new_request(core, expires_in_seconds=3600)
        receipts.add(usdc_fee_receipt(tx_hash(1)))
        wall_clock.advance(7200)

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.paid


class TestVerifyRejected:
    @pytest.mark.asyncio
    async def test_second_verify_already_settled(self, core, balances, receipts, sink):
        balances.set(PAYER, "10")
        request = await new_request(core)
        receipts.add(bundled_usdc_lcx_receipt(tx_hash(1)))
        await core.verify(request.id, tx_hash(1))

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.status is VerificationStatus.REJECTED
        assert verdict.reason == "AlreadySettled"
        assert verdict.details["tx_hash"] == tx_hash(1)
        assert sink.names().count("payment.paid") == 1

    @pytest.mark.asyncio
    async def test_reverted_transaction(self, core, receipts, store):
        request = await new_request(core)
        receipts.add(make_receipt(tx_hash(1), status=0))

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.reason == "TransactionFailed"
        assert verdict.retryable is False
        assert store.requests[request.id].status is RequestStatus.PENDING
        assert store.fee_transactions == {}

    @pytest.mark.asyncio
    async def test_payment_one_unit_short(self, core, balances, receipts, store):
        balances.set(PAYER, "10")
        request = await new_request(core)
        receipt = bundled_usdc_lcx_receipt(tx_hash(1))
        short = erc20(SEPOLIA_USDC, PAYER, RECEIVER, units("10", 6) - 1, tx_hash(1))
        receipts.add(make_receipt(tx_hash(1), transfers=[short, *receipt.token_transfers[1:]]))

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.reason == "AmountMismatch"
        assert verdict.details["found_base_units"] == ["9999999"]
        assert store.requests[request.id].status is RequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_overpayment_is_not_exact(self, core, receipts):
        request = await new_request(core)
        receipts.add(usdc_fee_receipt(tx_hash(1), amount="10.000001"))

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.reason == "AmountMismatch"

    @pytest.mark.asyncio
    async def test_mined_after_expiry(self, core, balances, receipts, store):
        balances.set(PAYER, "10")
        request = await new_request(core, expires_in_seconds=3600)
        receipts.add(bundled_usdc_lcx_receipt(
            tx_hash(1), block_timestamp=START + timedelta(seconds=3601)
        ))

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.reason == "Expired"
        assert store.requests[request.id].status is RequestStatus.PENDING

    @pytest.mark.asyncio
    async def test_wrong_payment_token(self, core, receipts):
        request = await new_request(core)
        receipts.add(make_receipt(tx_hash(1), transfers=[erc20(SEPOLIA_USDT, PAYER, RECEIVER, units("10", 6))]))

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.reason == "TokenMismatch"

    @pytest.mark.asyncio
    async def test_fee_sent_to_wrong_treasury(self, core, balances, receipts):
        balances.set(PAYER, "10")
        request = await new_request(core)
        receipts.add(make_receipt(tx_hash(1), transfers=[
            erc20(SEPOLIA_USDC, PAYER, RECEIVER, units("10", 6)),
            erc20(SEPOLIA_LCX, PAYER, OTHER_PAYER, units("2", 18)),
            erc20(SEPOLIA_LCX, PAYER, RECEIVER, units("2", 18)),
        ]))

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.reason == "RecipientMismatch"

    @pytest.mark.asyncio
    async def test_fee_paid_by_another_wallet(self, core, balances, receipts):
        balances.set(PAYER, "10")
        request = await new_request(core)
        receipts.add(make_receipt(tx_hash(1), transfers=[erc20(SEPOLIA_USDC, PAYER, RECEIVER, units("10", 6))]))
        receipts.add(bundled_usdc_lcx_receipt(tx_hash(2), payer=OTHER_PAYER))

        verdict = await core.verify(request.id, tx_hash(1), fee_tx_hash=tx_hash(2), creator_reward_tx_hash=tx_hash(2))

        assert verdict.reason == "SenderMismatch"

    @pytest.mark.asyncio
    async def test_designated_payer_enforced(self, core, receipts):
        request = await new_request(core, payer=PAYER)
        receipts.add(usdc_fee_receipt(tx_hash(1), payer=OTHER_PAYER))

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.reason == "SenderMismatch"
        assert verdict.details["expected_payer"] == PAYER

    @pytest.mark.asyncio
    async def test_transaction_reused_for_another_request(self, core, receipts):
        first = await new_request(core)
        second = await new_request(core)
        receipts.add(usdc_fee_receipt(tx_hash(1)))
        assert (await core.verify(first.id, tx_hash(1))).paid

        verdict = await core.verify(second.id, tx_hash(1))

        assert verdict.reason == "TransactionAlreadyUsed"
        assert verdict.details["request_id"] == first.id

    @pytest.mark.asyncio
    async def test_cancelled_request(self, core, receipts):
        request = await new_request(core)
        await core.cancel_request(request.id, requested_by=RECEIVER)
        receipts.add(usdc_fee_receipt(tx_hash(1)))

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.reason == "Cancelled"
        assert receipts.calls == []

    @pytest.mark.asyncio
    async def test_unknown_request(self, core):
        verdict = await core.verify("REQ-NOPE", tx_hash(1))

        assert verdict.reason == "NotFound"
        assert verdict.request is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_hash", ["", "0x123", "deadbeef", "0x" + "g" * 64])
    async def test_malformed_hash(self, core, bad_hash):
        request = await new_request(core)

        verdict = await core.verify(request.id, bad_hash)

        assert verdict.reason == "InvalidRequest"


class TestVerifyTransientFailures:
    @pytest.mark.asyncio
    async def test_not_mined_yet(self, core, receipts):
        request = await new_request(core)

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.reason == "TransactionNotFound"
        assert verdict.retryable is True

    @pytest.mark.asyncio
    async def test_pending_receipt_counts_as_not_found(self, core, receipts):
        request = await new_request(core)
        receipts.add(make_receipt(tx_hash(1), block_number=None))

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.reason == "TransactionNotFound"

    @pytest.mark.asyncio
    async def test_rpc_error(self, core, receipts):
        request = await new_request(core)
        receipts.error = ConnectionError("connection refused")

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.reason == "RpcUnavailable"
        assert verdict.retryable is True

    @pytest.mark.asyncio
    async def test_rpc_timeout(self, core, receipts):
        request = await new_request(core)
        receipts.add(usdc_fee_receipt(tx_hash(1)))
        receipts.delay = 1.0

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.reason == "Timeout"
        assert verdict.retryable is True

    @pytest.mark.asyncio
    async def test_retry_after_receipt_appears(self, core, receipts):
        request = await new_request(core)
        assert (await core.verify(request.id, tx_hash(1))).reason == "TransactionNotFound"

        receipts.add(usdc_fee_receipt(tx_hash(1)))

        assert (await core.verify(request.id, tx_hash(1))).paid

    @pytest.mark.asyncio
    async def test_balance_outage_without_locked_quote(self, core, balances, receipts):
        request = await new_request(core)
        receipts.add(usdc_fee_receipt(tx_hash(1)))
        balances.error = ConnectionError("rpc down")

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.reason == "BalanceUnavailable"
        assert verdict.retryable is True


class TestConcurrentVerification:
    @pytest.mark.asyncio
    async def test_single_winner(self, core, balances, receipts, sink, store):
        balances.set(PAYER, "10")
        request = await new_request(core)
        receipts.add(bundled_usdc_lcx_receipt(tx_hash(1)))
        receipts.delay = 0.01

        verdicts = await asyncio.gather(
            core.verify(request.id, tx_hash(1)),
            core.verify(request.id, tx_hash(1)),
        )

        statuses = sorted(v.status.value for v in verdicts)
        assert statuses == ["PAID", "REJECTED"]
        [rejected] = [v for v in verdicts if not v.paid]
        assert rejected.reason == "AlreadySettled"
        assert sink.names().count("payment.paid") == 1
        collected = [
            r for r in store.fee_transactions.values() if r.status is FeeTransactionStatus.COLLECTED
        ]
        assert len(collected) == 1


class TestVerifyWithoutLockedQuote:
    @pytest.mark.asyncio
    async def test_rejection_reserves_no_fee_record(self, core, balances, receipts, store):
        request = await new_request(core)
        receipts.add(make_receipt(tx_hash(1), transfers=[erc20(SEPOLIA_USDC, PAYER, RECEIVER, units("10", 6))]))

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.reason == "TokenMismatch"
        assert await store.list_fee_transactions(request.id) == []

        balances.set(PAYER, "10")
        quote = await core.quote(request.id, PAYER)

        assert quote.reused is False
        assert quote.quote.fee_token == "LCX"

    @pytest.mark.asyncio
    async def test_reward_fee_that_spent_the_balance_settles(self, core, receipts, store):
        # Balance reads 0 afterwards: the settlement moved the payer's LCX
        request = await new_request(core)
        receipts.add(bundled_usdc_lcx_receipt(tx_hash(1)))

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.paid
        assert verdict.fee_transaction.quote.fee_token == "LCX"
        [record] = await store.list_fee_transactions(request.id)
        assert record.id == verdict.fee_transaction.id
        assert record.status is FeeTransactionStatus.COLLECTED
        assert record.payment_tx_hash == tx_hash(1)

    @pytest.mark.asyncio
    async def test_fallback_fee_settles_and_is_recorded(self, core, receipts, store):
        request = await new_request(core)
        receipts.add(usdc_fee_receipt(tx_hash(1)))

        verdict = await core.verify(request.id, tx_hash(1), payer_agent_id="agent-9")

        assert verdict.paid
        [record] = await store.list_fee_transactions(request.id)
        assert record.quote.fee_token == "USDC"
        assert record.payer_agent_id == "agent-9"
        assert record.status is FeeTransactionStatus.COLLECTED


class TestMissingFeeTransfers:
    @pytest.mark.asyncio
    async def test_payment_only_receipt_is_retryable(self, core, receipts, store):
        request = await new_request(core)
        quote = await core.quote(request.id, PAYER)
        receipts.add(make_receipt(tx_hash(1), transfers=[erc20(SEPOLIA_USDC, PAYER, RECEIVER, units("10", 6))]))

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.reason == "TokenMismatch"
        assert verdict.retryable is True
        assert verdict.details["payment_verified"] is True
        assert store.requests[request.id].status is RequestStatus.PENDING
        assert store.fee_transactions[quote.fee_transaction_id].status is FeeTransactionStatus.PENDING

    @pytest.mark.asyncio
    async def test_fee_transfers_sent_later_settle(self, core, receipts):
        request = await new_request(core)
        await core.quote(request.id, PAYER)
        receipts.add(make_receipt(tx_hash(1), transfers=[erc20(SEPOLIA_USDC, PAYER, RECEIVER, units("10", 6))]))
        assert (await core.verify(request.id, tx_hash(1))).retryable

        receipts.add(make_receipt(tx_hash(2), transfers=[
            erc20(SEPOLIA_USDC, PAYER, TREASURY, units("0.3", 6)),
            erc20(SEPOLIA_USDC, PAYER, RECEIVER, units("0.3", 6)),
        ]))

        verdict = await core.verify(request.id, tx_hash(1), fee_tx_hash=tx_hash(2), creator_reward_tx_hash=tx_hash(2))

        assert verdict.paid

    @pytest.mark.asyncio
    async def test_payment_mismatch_is_not_retryable(self, core, receipts):
        request = await new_request(core)
        receipts.add(usdc_fee_receipt(tx_hash(1), amount="9"))

        verdict = await core.verify(request.id, tx_hash(1))

        assert verdict.reason == "AmountMismatch"
        assert verdict.retryable is False
