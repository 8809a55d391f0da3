from fastapi import Request

from paylink.actions import ActionDispatcher
from paylink.service import PaymentCore


def get_core(request: Request) -> PaymentCore:
    """PaymentCore built by the app lifespan"""
    return request.app.state.core


def get_dispatcher(request: Request) -> ActionDispatcher:
    return ActionDispatcher(request.app.state.core)
