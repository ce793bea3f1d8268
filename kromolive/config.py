from __future__ import annotations

import logging
import math
import os
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidConfigError

_LOGGER = logging.getLogger("kromolive.config")

DEFAULT_REST_HOST = "http://localhost:3004"
DEFAULT_STATIC_HOST = "https://ns9648k.web.sigma2.no"
DEFAULT_DURATION = 4.0
DEFAULT_PITCH = 0.0
DEFAULT_VELOCITY = 1.0
_ENV_PREFIX = "KROMOLIVE_"


def _env_str(name: str, default: str) -> str:
    value = os.environ.get(f"{_ENV_PREFIX}{name}", "").strip()
    return value or default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(f"{_ENV_PREFIX}{name}", "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        _LOGGER.warning("Ignoring non-numeric %s%s=%r", _ENV_PREFIX, name, raw)
        return default


def _format_number(value: float) -> str:
    # 4.0 -> "4", 0.5 -> "0.5"; matches the render server's path segments.
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


class SourceReference(BaseModel):
    """Raw material to render: a genome plus its render parameters.

    Only ``source_id``, ``duration``, ``pitch`` and ``velocity`` take part in the
    cache key; ``run_id`` and ``genome_url`` only tell a collaborator where to look.
    """

    source_id: str = Field(min_length=1)
    duration: float = DEFAULT_DURATION
    pitch: float = DEFAULT_PITCH
    velocity: float = DEFAULT_VELOCITY
    run_id: str | None = None
    genome_url: str | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("duration")
    @classmethod
    def _validate_duration(cls, value: float) -> float:
        if not math.isfinite(value) or value <= 0:
            raise ValueError("duration must be a positive number of seconds")
        return value

    @field_validator("pitch", "velocity")
    @classmethod
    def _validate_finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("render parameters must be finite")
        return value

    @property
    def cache_key(self) -> str:
        return (
            f"{self.source_id}-{_format_number(self.duration)}"
            f"_{_format_number(self.pitch)}_{_format_number(self.velocity)}"
        )

    def path_params(self) -> tuple[str, str, str]:
        return (
            _format_number(self.duration),
            _format_number(self.pitch),
            _format_number(self.velocity),
        )

    @classmethod
    def from_cell(
        cls,
        cell: Mapping[str, Any],
        render_params: Mapping[str, Any] | None = None,
    ) -> SourceReference:
        """Build a reference from a discovery-tree cell payload.

        Explicit render parameters win over the cell's own fields, zero included;
        falsy cell values fall through to the defaults the same way the tree view
        fills them in.
        """

        params = dict(render_params or {})

        def _param(key: str, fallback: Any) -> Any:
            value = params.get(key)
            return fallback if value is None else value

        payload = {
            "source_id": cell.get("genomeId") or cell.get("source_id"),
            "duration": _param("duration", cell.get("duration") or DEFAULT_DURATION),
            "pitch": _param(
                "pitch",
                cell.get("noteDelta") or cell.get("pitch") or DEFAULT_PITCH,
            ),
            "velocity": _param("velocity", cell.get("velocity") or DEFAULT_VELOCITY),
            "run_id": cell.get("evoRunId") or cell.get("run_id"),
            "genome_url": cell.get("genomeUrl") or cell.get("genome_url"),
        }
        return parse_source(payload)


class EngineSettings(BaseModel):
    rest_host: str = DEFAULT_REST_HOST
    static_host: str = DEFAULT_STATIC_HOST
    http_timeout: float = Field(default=30.0, gt=0)
    registration_timeout: float = Field(default=1.5, gt=0)
    resume_delay: float = Field(default=0.03, ge=0)
    restore_delay: float = Field(default=0.05, ge=0)
    silence_epsilon: float = Field(default=0.001, ge=0)
    default_gain: float = Field(default=0.8, ge=0)
    max_pattern_samples: int = Field(default=4, ge=1)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("rest_host", "static_host")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("host must not be empty")
        return value.rstrip("/")

    @classmethod
    def from_env(cls) -> EngineSettings:
        defaults = cls()
        try:
            return cls(
                rest_host=_env_str("REST_HOST", defaults.rest_host),
                static_host=_env_str("STATIC_HOST", defaults.static_host),
                http_timeout=_env_float("HTTP_TIMEOUT", defaults.http_timeout),
                registration_timeout=_env_float(
                    "REGISTRATION_TIMEOUT", defaults.registration_timeout
                ),
                resume_delay=_env_float("RESUME_DELAY", defaults.resume_delay),
                restore_delay=_env_float("RESTORE_DELAY", defaults.restore_delay),
                silence_epsilon=_env_float("SILENCE_EPSILON", defaults.silence_epsilon),
                default_gain=_env_float("DEFAULT_GAIN", defaults.default_gain),
            )
        except ValidationError as exc:
            raise InvalidConfigError(f"Invalid {_ENV_PREFIX}* settings: {exc}") from exc


class UnitConfigUpdate(BaseModel):
    """Partial update pushed by the unit configuration panel."""

    sync: bool | None = None
    solo: bool | None = None
    code: str | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")


def parse_source(payload: Mapping[str, Any]) -> SourceReference:
    try:
        return SourceReference.model_validate(dict(payload))
    except ValidationError as exc:
        raise InvalidConfigError(f"Invalid source reference: {exc}") from exc
