"""Shared FastAPI dependencies.

Separated to avoid circular imports between route modules. Every factory is
a process-wide singleton; tests swap them through ``app.dependency_overrides``.
"""

from __future__ import annotations

from functools import lru_cache

from bridge.functions import FunctionRegistry, build_default_registry
from bridge.manager import SessionManager
from calls.controller import CallController
from calls.store import CallStore
from config.settings import get_settings
from integrations.realtime_client import connect_realtime
from integrations.twilio_client import TelephonyProvider, TwilioTelephonyProvider


@lru_cache(maxsize=1)
def get_call_store() -> CallStore:
    return CallStore()


@lru_cache(maxsize=1)
def get_function_registry() -> FunctionRegistry:
    return build_default_registry()


@lru_cache(maxsize=1)
def get_telephony_provider() -> TelephonyProvider:
    return TwilioTelephonyProvider()


@lru_cache(maxsize=1)
def get_call_controller() -> CallController:
    settings = get_settings()
    return CallController(
        get_call_store(),
        get_telephony_provider(),
        default_from=settings.twilio_from_number,
        default_timeout_seconds=settings.default_call_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_session_manager() -> SessionManager:
    settings = get_settings()
    return SessionManager(
        get_call_store(),
        get_function_registry(),
        connect_realtime,
        max_sessions=settings.max_concurrent_sessions,
        voice=settings.realtime_voice,
        transcription_model=settings.realtime_transcription_model,
        max_pending_function_calls=settings.max_pending_function_calls,
    )


def reset_dependencies() -> None:
    for factory in (
        get_call_store,
        get_function_registry,
        get_telephony_provider,
        get_call_controller,
        get_session_manager,
    ):
        factory.cache_clear()
