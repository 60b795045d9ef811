"""Configuration loading helpers used by the CLI entrypoint.

Brief:
  This module centralizes:
    - reading the YAML config file
    - merging variables from config/env/CLI
    - validation into a BridgeConfig (see config_schema)

Inputs:
  - YAML config paths, ``-v/--var`` assignments, the process environment

Outputs:
  - BridgeConfig instances
"""

from __future__ import annotations

import os
import re
from typing import Any, Dict, List, Optional

import yaml

from .config_schema import BridgeConfig, validate_config


def _is_var_key(key: str) -> bool:
    """Brief: True when key is ALL_UPPERCASE and matches [A-Z_][A-Z0-9_]*."""

    return bool(key) and bool(re.fullmatch(r"[A-Z_][A-Z0-9_]*", key))


def _parse_yaml_value(text: str) -> Any:
    """Brief: Parse a CLI/environment value as YAML, falling back to the raw text."""

    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def parse_config_variables(
    cfg: Dict[str, Any],
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Merge config/environment/CLI variables into cfg['variables'].

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).
      - cli_vars: Optional list of CLI `KEY=YAML` assignments.
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - dict: The merged variables mapping stored back onto cfg['variables'].

    Precedence:
      - CLI (-v/--var) overrides environment overrides config-file variables.

    Example:
      >>> cfg = {'variables': {'PORT': 8053}}
      >>> parse_config_variables(cfg, cli_vars=['PORT=5353'], environ={})['PORT']
      5353
    """

    base = cfg.get("variables")
    if base is None:
        merged: Dict[str, Any] = {}
    elif isinstance(base, dict):
        merged = dict(base)
    else:
        raise ValueError("config.variables must be a mapping when present")

    env = os.environ if environ is None else environ
    for k, v in env.items():
        if isinstance(k, str) and _is_var_key(k):
            merged[k] = _parse_yaml_value(str(v))

    for assignment in cli_vars or []:
        if "=" not in assignment:
            raise ValueError(
                "Invalid -v/--var value (expected KEY=YAML), got: %r" % assignment
            )
        k, raw = assignment.split("=", 1)
        k = k.strip()
        if not _is_var_key(k):
            raise ValueError(
                "Invalid variable name %r (must be ALL_UPPERCASE and match [A-Z_][A-Z0-9_]*)"
                % k
            )
        merged[k] = _parse_yaml_value(raw)

    cfg["variables"] = merged
    return merged


def load_config(
    config_path: Optional[str] = None,
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> BridgeConfig:
    """Brief: Read, variable-merge and validate a YAML config file.

    Inputs:
      - config_path: Path to the YAML file; None means defaults only.
      - cli_vars: Optional `KEY=YAML` assignments from -v/--var.
      - environ: Optional environment mapping (tests).

    Outputs:
      - BridgeConfig

    Raises:
      - ValueError: invalid YAML root, invalid variables or schema violations.
      - OSError: the file cannot be read.
    """

    cfg: Any = {}
    if config_path:
        with open(config_path, "r") as f:
            try:
                cfg = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ValueError(f"Invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(cfg, dict):
        raise ValueError("Configuration root must be a mapping")

    parse_config_variables(cfg, cli_vars=list(cli_vars or []), environ=environ)
    return validate_config(cfg, config_path=config_path)
