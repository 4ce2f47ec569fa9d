"""
Catalog Service

Builds the static provider and automation-module catalogs that the
runtime draws fallback providers from and validates swarm modules
against. The built-in catalog can be extended with a JSON file and a
directory of automation modules supplied through configuration.
"""

import json
import logging
import random
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "openrouter"
DEFAULT_MODEL = "auto-reasoning"

PROVIDER_MODEL_DEFAULTS: Dict[str, str] = {
    "openrouter": "openai/gpt-5-mini",
    "openai": "gpt-5",
    "anthropic": "claude-sonnet-4-20250514",
    "gemini": "gemini-2.5-pro",
    "ollama": "qwen2.5:14b",
    "mistral": "mistral-large-latest",
    "groq": "llama-3.3-70b-versatile",
    "deepseek": "deepseek-chat",
    "xai": "grok-3",
    "together": "meta-llama/Llama-3.1-70B-Instruct-Turbo",
    "fireworks": "accounts/fireworks/models/deepseek-r1",
    "perplexity": "sonar-pro",
    "cohere": "command-a-03-2025",
    "bedrock": "anthropic.claude-3-7-sonnet-20250219-v1:0",
    "venice": "venice-uncensored",
    "vercel": "openai/gpt-4.1-mini",
    "nvidia": "meta/llama-3.1-70b-instruct",
    "astral": "openai/gpt-5-mini",
    "qwen": "qwen-max",
    "moonshot": "moonshot-v1-8k",
    "glm": "glm-4.6",
    "minimax": "MiniMax-Text-01",
    "zai": "zai-glm-4.6",
}

# Providers routable without a dedicated default model
EXTRA_PROVIDER_IDS = (
    "moonshot",
    "zai",
    "glm",
    "minimax",
    "qwen",
    "qianfan",
    "custom",
    "anthropic-custom",
)

MODULE_DESCRIPTIONS: Dict[str, str] = {
    "agent": "Core think-act-observe loop and task execution runtime",
    "heartbeat": "Scheduled pulse tasks, wake triggers, and liveness checks",
    "replication": "Child swarm spawning and lineage orchestration",
    "self-mod": "Guarded self-modification and audit logging",
    "survival": "Credit-aware mode switching and graceful degradation",
    "social": "Agent-to-agent communication and relay integrations",
    "registry": "Discovery identity maps and cross-agent addressing",
    "skills": "Dynamic skill loading and capability expansion",
    "conway": "Infrastructure client hooks for compute + inference",
    "state": "Persistence layer for tasks, events, and lineage",
}

GENERIC_MODULE_DESCRIPTION = "Automation module from automaton runtime"


def title_case(text: str) -> str:
    """Turn 'self-mod' or 'anthropic_custom' into 'Self Mod' / 'Anthropic Custom'"""
    parts = [part for part in re.split(r"[-_\s]+", text) if part]
    return " ".join(part[0].upper() + part[1:] for part in parts)


@dataclass(frozen=True)
class ProviderEntry:
    id: str
    label: str


@dataclass(frozen=True)
class AutomationModule:
    id: str
    label: str
    description: str


@dataclass
class RuntimeCatalog:
    """
    Provider and automation-module catalog

    Immutable after startup; shared by the lifecycle engine, the
    heartbeat ticker and the state normalizer.
    """
    providers: List[ProviderEntry]
    modules: List[AutomationModule]
    model_defaults: Dict[str, str] = field(default_factory=dict)

    def provider_ids(self) -> List[str]:
        return [provider.id for provider in self.providers]

    def module_ids(self) -> set:
        return {module.id for module in self.modules}

    def default_model_for(self, provider: str) -> str:
        return self.model_defaults.get(provider, DEFAULT_MODEL)

    def choose_fallback(self, current_provider: Optional[str], rng: random.Random) -> Tuple[str, str]:
        """
        Pick a different provider at random and its default model

        Falls back to the current provider when the catalog has no other.
        """
        candidates = [pid for pid in self.provider_ids() if pid != current_provider]
        provider = rng.choice(candidates) if candidates else (current_provider or DEFAULT_PROVIDER)
        return provider, self.default_model_for(provider)

    def to_view(self) -> Dict[str, list]:
        return {
            "providerCatalog": [
                {"id": provider.id, "label": provider.label} for provider in self.providers
            ],
            "automatonModules": [
                {"id": module.id, "label": module.label, "description": module.description}
                for module in self.modules
            ],
        }


def _read_catalog_file(catalog_file: Path) -> Dict[str, Dict[str, str]]:
    try:
        raw = json.loads(catalog_file.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable catalog file {catalog_file}: {e}")
        return {}

    if not isinstance(raw, dict):
        logger.warning(f"Ignoring catalog file {catalog_file}: expected a JSON object")
        return {}

    sections: Dict[str, Dict[str, str]] = {}
    for section in ("providers", "modules"):
        entries = raw.get(section)
        if isinstance(entries, dict):
            sections[section] = {
                str(key).strip().lower(): str(value).strip()
                for key, value in entries.items()
                if str(key).strip()
            }
    return sections


def _discover_module_dirs(automation_root: Path) -> List[str]:
    if not automation_root.is_dir():
        logger.warning(f"Automation root {automation_root} is not a directory")
        return []
    return sorted(entry.name for entry in automation_root.iterdir() if entry.is_dir())


def load_catalog(
    catalog_file: Optional[Path] = None,
    automation_root: Optional[Path] = None,
) -> RuntimeCatalog:
    """
    Build the runtime catalog

    Args:
        catalog_file: Optional JSON file with extra providers/modules
        automation_root: Optional directory whose sub-directories are modules

    Returns:
        RuntimeCatalog with providers sorted by id and modules by label
    """
    model_defaults = dict(PROVIDER_MODEL_DEFAULTS)
    provider_ids = set(PROVIDER_MODEL_DEFAULTS) | set(EXTRA_PROVIDER_IDS)
    module_descriptions = dict(MODULE_DESCRIPTIONS)

    if catalog_file is not None:
        extra = _read_catalog_file(catalog_file)
        for provider, model in extra.get("providers", {}).items():
            provider_ids.add(provider)
            if model:
                model_defaults[provider] = model
        for module_id, description in extra.get("modules", {}).items():
            module_descriptions[module_id] = description or GENERIC_MODULE_DESCRIPTION

    if automation_root is not None:
        discovered = _discover_module_dirs(automation_root)
        if discovered:
            module_descriptions = {
                name: module_descriptions.get(name, GENERIC_MODULE_DESCRIPTION)
                for name in discovered
            }

    providers = [
        ProviderEntry(id=provider, label=title_case(provider))
        for provider in sorted(pid for pid in provider_ids if len(pid) > 1)
    ]
    modules = sorted(
        (
            AutomationModule(id=module_id, label=title_case(module_id), description=description)
            for module_id, description in module_descriptions.items()
        ),
        key=lambda module: module.label,
    )

    logger.info(
        f"Catalog loaded with {len(providers)} providers and {len(modules)} automation modules"
    )
    return RuntimeCatalog(providers=providers, modules=modules, model_defaults=model_defaults)
