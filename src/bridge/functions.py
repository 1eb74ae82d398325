"""Tools the model may call during a conversation."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx

from bridge.protocol import OutputItem
from calls.errors import InvalidArguments, UnknownFunction
from calls.models import CallResult

LOGGER = logging.getLogger(__name__)

OPEN_METEO_URL = "https://api.open-meteo.com/v1/forecast"


@dataclass
class FunctionContext:
    """What a handler may see of the session that invoked it."""

    call_id: str | None
    record_outcome: Callable[[CallResult], None]


FunctionHandler = Callable[[dict[str, Any], FunctionContext], Awaitable[Any]]


@dataclass(frozen=True)
class FunctionSpec:
    name: str
    description: str
    handler: FunctionHandler
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )

    def to_realtime_schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


@dataclass(frozen=True)
class FunctionOutcome:
    call_id: str | None
    name: str
    output: str
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class FunctionRegistry:
    """Name -> handler table consulted for every model-issued function call."""

    def __init__(self, specs: Iterable[FunctionSpec] = ()) -> None:
        self._specs: dict[str, FunctionSpec] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: FunctionSpec) -> None:
        if spec.name in self._specs:
            LOGGER.warning("Function %s already registered, overwriting", spec.name)
        self._specs[spec.name] = spec

    def get(self, name: str) -> FunctionSpec | None:
        return self._specs.get(name)

    def schemas(self) -> list[dict[str, Any]]:
        return [spec.to_realtime_schema() for spec in self._specs.values()]

    async def invoke(self, name: str, arguments: str | None, context: FunctionContext) -> Any:
        spec = self._specs.get(name)
        if spec is None:
            raise UnknownFunction(f"No handler found for function: {name}")

        try:
            args = json.loads(arguments or "{}")
        except json.JSONDecodeError as exc:
            raise InvalidArguments() from exc
        if not isinstance(args, dict):
            raise InvalidArguments("Function arguments must be a JSON object.")

        missing = [key for key in spec.parameters.get("required", []) if key not in args]
        if missing:
            raise InvalidArguments(f"Missing required arguments: {', '.join(missing)}")

        LOGGER.info("Calling function %s with %s", name, args)
        return await spec.handler(args, context)

    async def dispatch(self, item: OutputItem, context: FunctionContext) -> FunctionOutcome:
        """Run one function call; every failure becomes an error payload."""

        name = item.name or ""
        try:
            result = await self.invoke(name, item.arguments, context)
        except (UnknownFunction, InvalidArguments) as exc:
            error = exc.detail
        except Exception as exc:
            LOGGER.exception("Function %s raised", name)
            error = f"Error running function {name}: {exc}"
        else:
            output = result if isinstance(result, str) else json.dumps(result)
            return FunctionOutcome(call_id=item.call_id, name=name, output=output)

        return FunctionOutcome(
            call_id=item.call_id,
            name=name,
            output=json.dumps({"error": error}),
            error=error,
        )


async def get_weather_from_coords(args: dict[str, Any], context: FunctionContext) -> dict[str, Any]:
    params = {
        "latitude": float(args["latitude"]),
        "longitude": float(args["longitude"]),
        "current": "temperature_2m",
    }
    async with httpx.AsyncClient(timeout=10) as client:
        response = await client.get(OPEN_METEO_URL, params=params)
    response.raise_for_status()
    current = response.json().get("current") or {}
    return {"temperature": current.get("temperature_2m"), "unit": "celsius"}


async def report_call_outcome(args: dict[str, Any], context: FunctionContext) -> dict[str, Any]:
    result = CallResult.model_validate(args)
    context.record_outcome(result)
    LOGGER.info("Call %s outcome reported: %s", context.call_id, result.status)
    return {"recorded": True}


WEATHER_FUNCTION = FunctionSpec(
    name="get_weather_from_coords",
    description="Get the current temperature for the given coordinates.",
    handler=get_weather_from_coords,
    parameters={
        "type": "object",
        "properties": {
            "latitude": {"type": "number"},
            "longitude": {"type": "number"},
        },
        "required": ["latitude", "longitude"],
    },
)

OUTCOME_FUNCTION = FunctionSpec(
    name="report_call_outcome",
    description="Record the outcome of this call once the goal is reached or abandoned.",
    handler=report_call_outcome,
    parameters={
        "type": "object",
        "properties": {
            "status": {
                "type": "string",
                "enum": ["confirmed", "failed", "human_escalation", "no_answer", "voicemail"],
            },
            "summary": {"type": "string", "description": "One or two sentences on what was agreed."},
            "entities": {
                "type": "object",
                "description": "Structured details gathered during the call (dates, names, amounts).",
            },
        },
        "required": ["status", "summary"],
    },
)


def build_default_registry() -> FunctionRegistry:
    return FunctionRegistry([WEATHER_FUNCTION, OUTCOME_FUNCTION])
