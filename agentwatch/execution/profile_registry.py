"""Profile registry: normalized, read-only view of the agent profile catalog."""
from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from typing import Any

from agentwatch.config import AgentWatchConfig

from .models import CommandConfig, ProfileConfig, ProfileVariant
from .profiles import default_profile_definitions

logger = logging.getLogger(__name__)


def _normalize_command(raw: Any) -> CommandConfig | None:
    """Validate a raw command mapping; None if it has no usable binary."""
    if not isinstance(raw, Mapping):
        return None
    binary = raw.get("binary")
    if not isinstance(binary, str) or not binary.strip():
        return None
    raw_args = raw.get("args")
    args = tuple(a for a in raw_args if isinstance(a, str)) if isinstance(raw_args, (list, tuple)) else ()
    env = None
    if isinstance(raw.get("env"), Mapping):
        env = {str(k): v for k, v in raw["env"].items() if isinstance(v, str)} or None
    return CommandConfig(binary=binary, args=args, env=env)


def _raw_variants(raw: Any) -> list[dict[str, Any]]:
    """Variants given as a list of ``{label, command}`` or a label mapping."""
    if isinstance(raw, Mapping):
        return [
            {"label": label, "command": cfg.get("command", cfg) if isinstance(cfg, Mapping) else cfg}
            for label, cfg in raw.items()
        ]
    if isinstance(raw, (list, tuple)):
        return [v for v in raw if isinstance(v, Mapping)]
    return []


def _normalize_profile(raw: Any) -> ProfileConfig | None:
    if not isinstance(raw, Mapping):
        return None
    label = raw.get("label")
    if not isinstance(label, str) or not label.strip():
        return None
    command = _normalize_command(raw.get("command"))
    if command is None:
        logger.debug("Dropping profile %r: no usable command", label)
        return None
    variants = []
    for variant in _raw_variants(raw.get("variants")):
        variant_label = variant.get("label")
        variant_command = _normalize_command(variant.get("command"))
        if not isinstance(variant_label, str) or not variant_label or variant_command is None:
            logger.debug("Dropping malformed variant %r of profile %s", variant_label, label)
            continue
        variants.append(ProfileVariant(label=variant_label, command=variant_command))
    builder = raw.get("build_parameters")
    return ProfileConfig(
        label=label,
        command=command,
        variants=tuple(variants),
        build_parameters=builder if callable(builder) else None,
    )


def _merge_command(base: Mapping[str, Any] | None, override: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base or {})
    for key in ("binary", "args"):
        if key in override:
            merged[key] = override[key]
    if isinstance(override.get("env"), Mapping):
        env = dict(merged.get("env") or {})
        env.update(override["env"])
        merged["env"] = env
    return merged


def apply_overrides(
    definitions: Iterable[Mapping[str, Any]],
    overrides: Mapping[str, Mapping[str, Any]] | None,
) -> list[dict[str, Any]]:
    """Merge YAML command overrides (label -> binary/args/env/variants) into definitions."""
    merged = {
        str(d.get("label")): dict(d) for d in definitions if isinstance(d, Mapping)
    }
    for label, override in (overrides or {}).items():
        if not isinstance(override, Mapping):
            continue
        definition = merged.setdefault(label, {"label": label})
        base_command = definition.get("command")
        definition["command"] = _merge_command(base_command, override)
        if "variants" in override:
            variants = {v.get("label"): dict(v) for v in _raw_variants(definition.get("variants"))}
            for variant in _raw_variants(override["variants"]):
                command = variant.get("command")
                if not isinstance(command, Mapping):
                    continue
                existing = variants.get(variant.get("label"), {}).get("command")
                variants[variant.get("label")] = {
                    "label": variant.get("label"),
                    "command": _merge_command(existing or definition["command"], command),
                }
            definition["variants"] = list(variants.values())
        logger.info("Applied profile override for %s", label)
    return list(merged.values())


class ProfileRegistry:
    """Normalizes profile definitions on first use and serves lookups.

    Definitions default to the built-in catalog. Invalid entries are
    dropped silently during normalization; the result is read-only.
    """

    def __init__(
        self,
        definitions: Iterable[Mapping[str, Any]] | None = None,
        overrides: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> None:
        self._definitions = list(definitions) if definitions is not None else None
        self._overrides = dict(overrides or {})
        self._profiles: dict[str, ProfileConfig] | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: AgentWatchConfig) -> ProfileRegistry:
        return cls(default_profile_definitions(config), config.profile_overrides)

    def _ensure_loaded(self) -> dict[str, ProfileConfig]:
        if self._profiles is not None:
            return self._profiles
        with self._lock:
            if self._profiles is None:
                definitions = self._definitions
                if definitions is None:
                    definitions = default_profile_definitions()
                profiles: dict[str, ProfileConfig] = {}
                for raw in apply_overrides(definitions, self._overrides):
                    profile = _normalize_profile(raw)
                    if profile is not None:
                        profiles[profile.label] = profile
                self._profiles = profiles
                logger.info(
                    "Profile registry loaded: %s", ", ".join(profiles) or "(none)",
                )
        return self._profiles

    def labels(self) -> list[str]:
        return list(self._ensure_loaded())

    def get_profile(self, label: str) -> ProfileConfig | None:
        return self._ensure_loaded().get(label)

    def get_variant(self, label: str, variant_label: str) -> ProfileVariant | None:
        profile = self.get_profile(label)
        if profile is None:
            return None
        for variant in profile.variants:
            if variant.label == variant_label:
                return variant
        return None

    def get_command(self, label: str, variant_label: str | None = None) -> CommandConfig | None:
        """Command for a profile, or for one of its variants.

        An unknown variant falls back to the profile's base command.
        """
        profile = self.get_profile(label)
        if profile is None:
            return None
        if variant_label:
            variant = self.get_variant(label, variant_label)
            if variant is not None:
                return variant.command
            logger.debug("Unknown variant %s for profile %s, using base command", variant_label, label)
        return profile.command

    def list_profiles(self) -> list[dict[str, Any]]:
        """Profile catalog for clients: labels and variant labels."""
        return [
            {"label": p.label, "variants": [{"label": v.label} for v in p.variants]}
            for p in self._ensure_loaded().values()
        ]
