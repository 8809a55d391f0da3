"""
Structured actions

Agents and chat front-ends talk to the core through a closed set of typed
actions selected by the ``action`` field. Free text is never interpreted
here; anything that does not validate against one of the action models is
an InvalidRequest.
"""

from decimal import Decimal
from typing import Annotated, Any, Callable, Dict, Literal, Optional, Union

import structlog
from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

from paylink.chains import supported_network_list
from paylink.errors import InvalidRequest, PaymentError
from paylink.service import PaymentCore

logger = structlog.get_logger()


class CreateLinkAction(BaseModel):
    action: Literal["create_link"] = "create_link"
    amount: Decimal
    token: str
    receiver: str
    network: str = "sepolia"
    description: str = ""
    payer: Optional[str] = None
    expires_in_seconds: Optional[int] = Field(default=None, gt=0)
    token_decimals: Optional[int] = Field(default=None, ge=0, le=36)
    creator_agent_id: Optional[str] = None
    creator_wallet: Optional[str] = None


class PayLinkAction(BaseModel):
    """Request a fee quote and transfer instructions for a payer"""
    action: Literal["pay_link"] = "pay_link"
    request_id: str
    payer_address: str
    payer_agent_id: Optional[str] = None


class VerifyPaymentAction(BaseModel):
    action: Literal["verify_payment"] = "verify_payment"
    request_id: str
    tx_hash: str
    fee_tx_hash: Optional[str] = None
    creator_reward_tx_hash: Optional[str] = None
    payer_agent_id: Optional[str] = None


class CheckStatusAction(BaseModel):
    action: Literal["check_status"] = "check_status"
    request_id: str


class CancelLinkAction(BaseModel):
    """Cancel a link; the creator is identified by wallet or by a signed cancel message"""
    action: Literal["cancel_link"] = "cancel_link"
    request_id: str
    requested_by: Optional[str] = None
    signature: Optional[str] = None

    @model_validator(mode="after")
    def require_creator(self) -> "CancelLinkAction":
        if not self.requested_by and not self.signature:
            raise ValueError("requested_by or signature is required")
        return self


class ListNetworksAction(BaseModel):
    action: Literal["list_networks"] = "list_networks"


Action = Annotated[
    Union[
        CreateLinkAction,
        PayLinkAction,
        VerifyPaymentAction,
        CheckStatusAction,
        CancelLinkAction,
        ListNetworksAction,
    ],
    Field(discriminator="action"),
]

_action_adapter = TypeAdapter(Action)


def parse_action(data: Dict[str, Any]) -> Action:
    try:
        return _action_adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidRequest(
            "Unrecognised or malformed action",
            details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
        ) from e


class ActionResult(BaseModel):
    action: str
    ok: bool
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None


class ActionDispatcher:
    """Routes each action type to the matching PaymentCore operation"""

    def __init__(self, core: PaymentCore):
        self.core = core
        self._handlers: Dict[type, Callable] = {
            CreateLinkAction: self._create_link,
            PayLinkAction: self._pay_link,
            VerifyPaymentAction: self._verify_payment,
            CheckStatusAction: self._check_status,
            CancelLinkAction: self._cancel_link,
            ListNetworksAction: self._list_networks,
        }

    async def dispatch(self, action: Union[Action, Dict[str, Any]]) -> ActionResult:
        if isinstance(action, dict):
            try:
                action = parse_action(action)
            except InvalidRequest as e:
                return ActionResult(action=str(action.get("action")), ok=False, error=e.to_dict())

        handler = self._handlers[type(action)]
        try:
            ok, result = await handler(action)
        except PaymentError as e:
            logger.info("action_failed", action=action.action, code=e.code)
            return ActionResult(action=action.action, ok=False, error=e.to_dict())
        return ActionResult(action=action.action, ok=ok, result=result)

    async def _create_link(self, action: CreateLinkAction):
        request = await self.core.create_request(**action.model_dump(exclude={"action"}))
        return True, request.model_dump(mode="json")

    async def _pay_link(self, action: PayLinkAction):
        quote = await self.core.quote(action.request_id, action.payer_address, action.payer_agent_id)
        return True, quote.model_dump(mode="json")

    async def _verify_payment(self, action: VerifyPaymentAction):
        verdict = await self.core.verify(
            action.request_id,
            action.tx_hash,
            fee_tx_hash=action.fee_tx_hash,
            creator_reward_tx_hash=action.creator_reward_tx_hash,
            payer_agent_id=action.payer_agent_id,
        )
        return verdict.paid, verdict.model_dump(mode="json")

    async def _check_status(self, action: CheckStatusAction):
        request = await self.core.get_request(action.request_id)
        return True, request.model_dump(mode="json")

    async def _cancel_link(self, action: CancelLinkAction):
        request = await self.core.cancel_request(
            action.request_id,
            requested_by=action.requested_by,
            signature=action.signature,
        )
        return True, request.model_dump(mode="json")

    async def _list_networks(self, action: ListNetworksAction):
        return True, {"networks": supported_network_list()}
