"""
プランのアップグレード（決済 → プラン切り替え）と決済コールバックの処理。
Plan upgrades: validate the request, charge through the payment gateway,
record the attempt and switch the subscription once payment completes.
"""

import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

from dreamtrip import database, redis_client
from dreamtrip.errors import InvalidRequest, PaymentDeclined, PaymentGatewayError, UnknownUser
from dreamtrip.limit_manager import AdmissionController
from dreamtrip.models import PaymentTransaction
from dreamtrip.payments import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    PaymentGateway,
    build_charge_request,
    build_gateway,
)
from dreamtrip.subscription import PLANS, Plan, Tier, parse_tier

logger = logging.getLogger(__name__)

STATUS_ERROR = "error"


def _parse_amount(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def resolve_plan(raw_tier: Any, raw_amount: Any) -> Plan:
    """
    アップグレード先プランと金額を検証する
    Validate the target tier and that the amount matches its price.
    """
    tier = parse_tier(raw_tier)
    if tier is None:
        raise InvalidRequest(f"unknown tier {raw_tier!r}", public_message="Unknown subscription plan.")
    if tier is Tier.BASIC:
        raise InvalidRequest("cannot upgrade to basic", public_message="The basic plan does not require payment.")
    plan = PLANS[tier]
    amount = _parse_amount(raw_amount)
    if amount != plan.price:
        raise InvalidRequest(
            f"amount {raw_amount!r} does not match {plan.price}",
            public_message=f"The {plan.name} plan costs {plan.price} {plan.currency}.",
        )
    return plan


class BillingService:
    def __init__(
        self,
        admission: AdmissionController,
        gateway: Optional[PaymentGateway] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.admission = admission
        self.gateway = gateway or build_gateway()
        self.clock = clock

    def _record(self, transaction_id: str, **fields: Any) -> None:
        db = database.SessionLocal()
        try:
            txn = db.get(PaymentTransaction, transaction_id)
            now = self.clock()
            if txn is None:
                txn = PaymentTransaction(id=transaction_id, created_at=now, **fields)
                db.add(txn)
            else:
                for name, value in fields.items():
                    setattr(txn, name, value)
            txn.updated_at = now
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _upgraded_payload(self, user_id: str, plan: Plan, transaction_id: str) -> Dict[str, Any]:
        record = self.admission.upgrade_to_plan(user_id, plan.tier)
        return {
            "success": True,
            "status": STATUS_COMPLETED,
            "transactionId": transaction_id,
            "tier": record.tier.value,
            "planLimits": record.plan_limits(),
            "remaining": record.remaining(),
            "message": f"Your {plan.name} plan is now active.",
        }

    def process_upgrade(self, user_id: str, body: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
        """
        決済を実行し、完了していればプランを切り替える
        Charge for the requested plan and upgrade when the payment completes.

        Returns (HTTP status, payload): 200 completed, 202 pending.
        """
        plan = resolve_plan(body.get("newTier"), body.get("amount"))
        request = build_charge_request(
            user_id,
            plan.tier.value,
            plan.price,
            plan.currency,
            body.get("paymentMethod"),
            body.get("phoneOrCardToken"),
        )
        if not self.admission.has_user(user_id):
            raise UnknownUser(f"upgrade requested for unknown user {user_id}")

        base_fields = {
            "user_id": user_id,
            "tier": plan.tier.value,
            "amount": plan.price,
            "currency": plan.currency,
            "method": request.method,
            "network": request.network,
        }
        try:
            result = self.gateway.charge(request)
        except PaymentGatewayError:
            self._record(request.reference, status=STATUS_ERROR, **base_fields)
            raise

        self._record(request.reference, status=result.status, gateway_reference=result.reference, **base_fields)
        logger.info(
            "Payment %s for %s (%s via %s): %s",
            request.reference, user_id, plan.tier.value, self.gateway.name, result.status,
        )

        if result.status == STATUS_COMPLETED:
            return 200, self._upgraded_payload(user_id, plan, request.reference)
        if result.status == STATUS_PENDING:
            return 202, {
                "success": False,
                "status": STATUS_PENDING,
                "transactionId": request.reference,
                "message": "Payment pending. Please approve the request on your phone.",
            }
        raise PaymentDeclined(f"gateway declined {request.reference}: {result.message}")

    def _lookup(self, transaction_id: str) -> Optional[Tuple[str, str, str, str]]:
        db = database.SessionLocal()
        try:
            txn = db.get(PaymentTransaction, transaction_id)
            if txn is None:
                txn = (
                    db.query(PaymentTransaction)
                    .filter(PaymentTransaction.gateway_reference == transaction_id)
                    .first()
                )
            if txn is None:
                return None
            return txn.id, txn.user_id, txn.tier, txn.status
        finally:
            db.close()

    def handle_callback(self, transaction_id: Any, status: Any) -> Dict[str, Any]:
        """
        決済ゲートウェイからの結果通知を反映する（完了済みなら何もしない）
        Apply a gateway callback; repeating a completed callback is a no-op.

        同じ取引への通知は取引ID単位のロックで直列化する。
        Callbacks for one transaction are serialized under a per-transaction lock,
        so the plan switch happens at most once even when the gateway retries.
        """
        if not isinstance(transaction_id, str) or not transaction_id:
            raise InvalidRequest("transactionId missing", public_message="transactionId is required.")
        status = str(status or "").lower()
        if status not in (STATUS_COMPLETED, STATUS_PENDING, STATUS_FAILED):
            raise InvalidRequest(f"unknown status {status!r}", public_message="Unknown payment status.")

        found = self._lookup(transaction_id)
        if found is None:
            raise InvalidRequest(f"unknown transaction {transaction_id}", public_message="Unknown transaction.")

        with redis_client.document_lock(f"payment:{found[0]}"):
            # ロック待ちの間に別の通知が完了させている可能性がある
            txn_id, user_id, tier, current = self._lookup(found[0])
            if current == STATUS_COMPLETED:
                return {"success": True, "status": STATUS_COMPLETED, "transactionId": txn_id}
            if status == STATUS_COMPLETED:
                payload = self._upgraded_payload(user_id, PLANS[Tier(tier)], txn_id)
                self._record(txn_id, status=STATUS_COMPLETED)
                logger.info("Payment %s completed by callback; %s is now on %s", txn_id, user_id, tier)
                return payload
            self._record(txn_id, status=status)
        return {"success": False, "status": status, "transactionId": txn_id}
