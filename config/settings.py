"""
FlowDesk configuration: dataclass sections filled from a YAML file
whose string values may reference environment variables as ${NAME}.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class StoreConfig:
    type: str = "rest"                      # "rest" | "memory"
    base_url: str = ""                      # e.g. http://localhost:3000/api/messages
    token: str = ""                         # bearer credential
    timeout_seconds: float = 30.0
    retry_attempts: int = 3                 # transport errors / 5xx only
    retry_max_wait: float = 10.0


@dataclass
class SimulationConfig:
    reply_delay_seconds: float = 1.0
    simulated_identity: str = "Usuário"
    greeting: str = "👋 Olá! Bem-vindo ao nosso atendimento. Como posso ajudá-lo?"
    fallback: str = (
        "🤔 Desculpe, não entendi sua mensagem. Você pode tentar novamente "
        "ou digitar \"menu\" para ver as opções disponíveis."
    )
    traversal: str = "free"                 # "free" | "graph"


@dataclass
class SynthesisConfig:
    policy: list[dict[str, Any]] = field(default_factory=list)   # empty = built-in rules


@dataclass
class Settings:
    app_name: str = "FlowDesk"
    debug: bool = False
    store: StoreConfig = field(default_factory=StoreConfig)
    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    synthesis: SynthesisConfig = field(default_factory=SynthesisConfig)


_cached: Optional[Settings] = None

_ENV_REF = re.compile(r"\$\{(\w+)\}")
DEFAULT_CONFIG = Path(__file__).parent / "settings.yaml"


def _expand(node: Any) -> Any:
    """Expand ${NAME} references in every string of a parsed YAML tree.

    Unset variables are left as written.
    """
    if isinstance(node, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(0)), node)
    if isinstance(node, dict):
        return {key: _expand(item) for key, item in node.items()}
    if isinstance(node, list):
        return [_expand(item) for item in node]
    return node


def _section(raw: dict, name: str) -> Optional[dict]:
    if name not in raw:
        return None
    return raw[name] or {}


def load_settings(config_path: Optional[str] = None) -> Settings:
    """
    Read the YAML config into a fresh Settings and make it the cached one.

    The path defaults to $FLOWDESK_CONFIG, then the bundled settings.yaml.
    A missing file yields the built-in defaults.
    """
    global _cached

    path = Path(config_path or os.environ.get("FLOWDESK_CONFIG", DEFAULT_CONFIG))
    settings = Settings()

    if path.exists():
        with open(path, encoding="utf-8") as f:
            raw = _expand(yaml.safe_load(f) or {})

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        store = _section(raw, "store")
        if store is not None:
            base = StoreConfig()
            settings.store = StoreConfig(
                type=store.get("type", base.type),
                base_url=store.get("base_url", base.base_url),
                token=store.get("token", base.token),
                timeout_seconds=float(store.get("timeout_seconds", base.timeout_seconds)),
                retry_attempts=int(store.get("retry_attempts", base.retry_attempts)),
                retry_max_wait=float(store.get("retry_max_wait", base.retry_max_wait)),
            )

        sim = _section(raw, "simulation")
        if sim is not None:
            base = SimulationConfig()
            settings.simulation = SimulationConfig(
                reply_delay_seconds=float(sim.get("reply_delay_seconds", base.reply_delay_seconds)),
                simulated_identity=sim.get("simulated_identity", base.simulated_identity),
                greeting=sim.get("greeting", base.greeting),
                fallback=sim.get("fallback", base.fallback),
                traversal=sim.get("traversal", base.traversal),
            )

        synthesis = _section(raw, "synthesis")
        if synthesis is not None:
            settings.synthesis = SynthesisConfig(policy=synthesis.get("policy") or [])

    _cached = settings
    return settings


def get_settings() -> Settings:
    """Settings loaded on first use, shared afterwards."""
    global _cached
    if _cached is None:
        _cached = load_settings()
    return _cached
