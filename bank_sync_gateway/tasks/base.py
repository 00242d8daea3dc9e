"""Task definitions run by the durable queue"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Type

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from bank_sync_gateway.config import Settings, settings as default_settings
from bank_sync_gateway.domain.exceptions import TaskPayloadError
from bank_sync_gateway.domain.retry import RetryPolicy


@dataclass
class TaskServices:
    """Long-lived collaborators handed to every task run"""

    provider_client: Any
    notification_client: Any
    settings: Settings = field(default_factory=lambda: default_settings)


@dataclass
class TaskContext:
    """Per-attempt context"""

    run_id: str
    attempt: int
    services: TaskServices
    session_factory: Callable[[], Session]

    @property
    def settings(self) -> Settings:
        return self.services.settings


TaskRunner = Callable[[Any, TaskContext], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class TaskDefinition:
    """
    A schedulable, retryable unit of work.

    Attributes:
        id: stable task identifier stored on every queued run
        schema: pydantic model the payload must satisfy
        run: coroutine executing one attempt; returns a JSON-able result
        retry: bounded backoff policy
        concurrency_key: maps a payload to the key that serializes runs
        max_duration_seconds: hard wall-clock limit per attempt
        concurrency_limit: max simultaneous runs of this task id
    """

    id: str
    schema: Type[BaseModel]
    run: TaskRunner
    retry: RetryPolicy
    concurrency_key: Callable[[Any], str]
    max_duration_seconds: float = 300
    concurrency_limit: int = 5

    def parse(self, payload: Any) -> BaseModel:
        if isinstance(payload, self.schema):
            return payload
        try:
            return self.schema.model_validate(payload)
        except ValidationError as e:
            raise TaskPayloadError(f"Invalid payload for {self.id}: {e}") from e

    def serialize(self, payload: Any) -> Mapping[str, Any]:
        return self.parse(payload).model_dump(mode="json", by_alias=True)


def policy_from_settings(max_attempts: int, config: Settings = default_settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        factor=config.retry_factor,
        min_timeout_ms=config.retry_min_timeout_ms,
        max_timeout_ms=config.retry_max_timeout_ms,
    )


# Scheduled sweeps run once; the next tick is the retry
SINGLE_ATTEMPT = RetryPolicy(max_attempts=1)
