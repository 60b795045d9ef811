"""Configuration models and validation for dohbridge.

Brief:
  - Pydantic models describing every config section with defaults, so an
    empty file (or no file) yields a working loopback bridge.
  - ``${VAR}`` expansion from the top-level ``variables`` mapping.
  - validate_config() turning a parsed YAML mapping into a BridgeConfig or a
    readable ValueError.
"""

from __future__ import annotations

import copy
import json
import re
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")


class ListenConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = Field(default=8053, ge=0, le=65535)
    max_datagram: int = Field(default=5000, ge=512, le=65535)

    class Config:
        extra = "forbid"


class ResolverConfig(BaseModel):
    """Resolver API endpoint and HTTPS client settings."""

    url: str = "https://dns.google/resolve"
    # None keeps the HTTP stack default (no enforced timeout)
    timeout_ms: Optional[int] = Field(default=None, gt=0)
    verify: bool = True
    ca_file: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    class Config:
        extra = "forbid"


class BridgeSection(BaseModel):
    max_in_flight: int = Field(default=1, ge=1, le=256)
    queue_size: int = Field(default=1024, ge=1)
    preserve_order: bool = True
    lockstep: bool = False
    servfail_on_failure: bool = False

    class Config:
        extra = "forbid"


class LoggingConfig(BaseModel):
    level: str = "info"
    stderr: bool = True
    file: Optional[str] = None
    syslog: Union[bool, Dict[str, Any]] = False

    class Config:
        extra = "forbid"


class StatisticsConfig(BaseModel):
    enabled: bool = False
    interval_seconds: int = Field(default=300, ge=1)
    reset_on_log: bool = False
    log_level: str = "info"

    class Config:
        extra = "forbid"


class BridgeConfig(BaseModel):
    """
    Brief: Validated top-level configuration.

    Example:
      >>> BridgeConfig().listen.port
      8053
    """

    listen: ListenConfig = Field(default_factory=ListenConfig)
    resolver: ResolverConfig = Field(default_factory=ResolverConfig)
    bridge: BridgeSection = Field(default_factory=BridgeSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    statistics: StatisticsConfig = Field(default_factory=StatisticsConfig)

    class Config:
        extra = "forbid"


def expand_variables(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Brief: Expand ``${KEY}`` references using cfg['variables'].

    Inputs:
      - cfg: Parsed configuration mapping (mutated in-place).

    Outputs:
      - dict: cfg without the ``variables`` group.

    Behavior:
      - A string that is exactly ``${KEY}`` is replaced by the variable's YAML
        value (so ints/bools keep their type).
      - ``${KEY}`` inside a longer string is substituted textually.
      - Unknown references are left untouched; cycles raise ValueError.
    """

    variables = cfg.pop("variables", None) or {}
    if not isinstance(variables, dict):
        raise ValueError("config.variables must be a mapping when present")

    resolved: Dict[str, Any] = {}

    def _resolve_var(key: str, stack: List[str]) -> Any:
        if key in resolved:
            return resolved[key]
        if key in stack:
            raise ValueError(
                "config.variables contains a cycle: " + " -> ".join(stack + [key])
            )
        value = _expand_obj(variables[key], stack + [key])
        resolved[key] = value
        return value

    def _expand_string(text: str, stack: List[str]) -> Any:
        whole = _VAR_PATTERN.fullmatch(text)
        if whole and whole.group(1) in variables:
            return copy.deepcopy(_resolve_var(whole.group(1), stack))

        def _repl(match: "re.Match[str]") -> str:
            k = match.group(1)
            if k not in variables:
                return match.group(0)
            v = _resolve_var(k, stack)
            if isinstance(v, bool):
                return "true" if v else "false"
            if v is None:
                return "null"
            if isinstance(v, (int, float, str)):
                return str(v)
            return json.dumps(v)

        return _VAR_PATTERN.sub(_repl, text)

    def _expand_obj(obj: Any, stack: List[str]) -> Any:
        if isinstance(obj, str):
            return _expand_string(obj, stack)
        if isinstance(obj, list):
            return [_expand_obj(item, stack) for item in obj]
        if isinstance(obj, dict):
            return {k: _expand_obj(v, stack) for k, v in obj.items()}
        return obj

    for top_key in list(cfg.keys()):
        cfg[top_key] = _expand_obj(cfg[top_key], [])
    return cfg


def _format_errors(exc: ValidationError, *, config_path: Optional[str]) -> str:
    lines: List[str] = [f"Invalid configuration in {config_path or '<config dict>'}:"]
    for err in exc.errors():
        loc = "/".join(str(p) for p in err.get("loc", ())) or "<root>"
        lines.append(f"- {loc}: {err.get('msg')}")
    return "\n".join(lines)


def validate_config(
    cfg: Optional[Dict[str, Any]], *, config_path: Optional[str] = None
) -> BridgeConfig:
    """Brief: Expand variables and validate a parsed configuration mapping.

    Inputs:
      - cfg: Dict loaded from YAML (may be None or empty).
      - config_path: Optional path used only in error messages.

    Outputs:
      - BridgeConfig

    Raises:
      - ValueError: unknown keys, wrong types or out-of-range values; the
        message lists every offending path.

    Example:
      >>> validate_config({"listen": {"port": 5353}}).listen.port
      5353
    """

    data = copy.deepcopy(cfg or {})
    if not isinstance(data, dict):
        raise ValueError("Configuration root must be a mapping")
    expand_variables(data)
    try:
        return BridgeConfig(**data)
    except ValidationError as exc:
        raise ValueError(_format_errors(exc, config_path=config_path)) from exc
