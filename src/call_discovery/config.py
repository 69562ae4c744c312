"""Configuration loading from call-discovery.toml."""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from call_discovery.constants import DEFAULT_LIMITS, INITIAL_PROMPT, PRIORITY_FLOOR

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "call-discovery.toml"
TOKEN_ENV_VAR = "CALL_API_TOKEN"


@dataclass
class TargetConfig:
	"""Who to call and where call events are delivered."""

	address: str = ""
	callback_url: str = ""
	initial_prompt: str = INITIAL_PROMPT


@dataclass
class ExplorationConfig:
	max_depth: int = DEFAULT_LIMITS["max_depth"]
	max_children: int = DEFAULT_LIMITS["max_children"]
	max_retry_attempts: int = DEFAULT_LIMITS["max_retry_attempts"]
	retry_base_delay: float = 1.0


@dataclass
class SchedulerConfig:
	max_concurrent_calls: int = DEFAULT_LIMITS["max_concurrent_calls"]
	min_call_interval: float = 0.5
	priority_floor: int = PRIORITY_FLOOR


@dataclass
class CallApiConfig:
	base_url: str = ""
	token: str = ""
	timeout: float = 10.0
	recording_timeout: float = 15.0
	max_retries: int = DEFAULT_LIMITS["http_retries"]


@dataclass
class EventsConfig:
	path: str = ""


@dataclass
class DiscoveryConfig:
	"""Top-level configuration."""

	target: TargetConfig = field(default_factory=TargetConfig)
	exploration: ExplorationConfig = field(default_factory=ExplorationConfig)
	scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
	call_api: CallApiConfig = field(default_factory=CallApiConfig)
	events: EventsConfig = field(default_factory=EventsConfig)


def _build(cls: type, data: dict[str, Any], section: str) -> Any:
	known = set(cls.__dataclass_fields__)
	unknown = set(data) - known
	if unknown:
		logger.warning("Ignoring unknown keys in [%s]: %s", section, ", ".join(sorted(unknown)))
	return cls(**{k: v for k, v in data.items() if k in known})


def load_config(path: str | Path) -> DiscoveryConfig:
	"""Load a TOML config file. Missing sections fall back to defaults."""
	p = Path(path)
	if not p.exists():
		raise FileNotFoundError(f"Config file not found: {p}")
	with open(p, "rb") as f:
		data = tomllib.load(f)

	cfg = DiscoveryConfig(
		target=_build(TargetConfig, data.get("target", {}), "target"),
		exploration=_build(ExplorationConfig, data.get("exploration", {}), "exploration"),
		scheduler=_build(SchedulerConfig, data.get("scheduler", {}), "scheduler"),
		call_api=_build(CallApiConfig, data.get("call_api", {}), "call_api"),
		events=_build(EventsConfig, data.get("events", {}), "events"),
	)
	if not cfg.call_api.token:
		cfg.call_api.token = os.environ.get(TOKEN_ENV_VAR, "")
	return cfg


def validate_config(config: DiscoveryConfig) -> list[str]:
	"""Return a list of problems; empty means the config is usable."""
	issues: list[str] = []
	if not config.target.address:
		issues.append("target.address is required")
	if not config.target.callback_url:
		issues.append("target.callback_url is required")
	if not config.target.initial_prompt.strip():
		issues.append("target.initial_prompt must not be empty")
	if config.exploration.max_depth < 1:
		issues.append("exploration.max_depth must be >= 1")
	if config.exploration.max_children < 1:
		issues.append("exploration.max_children must be >= 1")
	if config.exploration.max_retry_attempts < 1:
		issues.append("exploration.max_retry_attempts must be >= 1")
	if config.exploration.retry_base_delay < 0:
		issues.append("exploration.retry_base_delay must be >= 0")
	if config.scheduler.max_concurrent_calls < 1:
		issues.append("scheduler.max_concurrent_calls must be >= 1")
	if config.scheduler.min_call_interval < 0:
		issues.append("scheduler.min_call_interval must be >= 0")
	if config.call_api.base_url and not config.call_api.token:
		issues.append(f"call_api.token is required (or set {TOKEN_ENV_VAR})")
	return issues


CONFIG_TEMPLATE = """\
[target]
address = "+15555550100"
callback_url = "https://example.com/webhook/callback"

[exploration]
max_depth = 5
max_children = 4
max_retry_attempts = 3
retry_base_delay = 1.0

[scheduler]
max_concurrent_calls = 3
min_call_interval = 0.5

[call_api]
base_url = "https://api.example.com/rest/exercise"
# token = ""  # or set CALL_API_TOKEN

[events]
path = "discovery-events.jsonl"
"""
