"""Resolve model clients by provider name, import path or config file."""

from __future__ import annotations

import importlib
import json
from pathlib import Path
from typing import Any, Dict, Mapping, Protocol, Sequence

import structlog

from .llm import LLMClient

logger = structlog.get_logger(__name__)


class ProviderFactory(Protocol):
    """Callable returning a ready-to-use :class:`LLMClient`."""

    def __call__(self, **options: Any) -> LLMClient:
        """Create a new client using keyword arguments as configuration."""


class LLMProviderRegistry:
    """Registry that resolves provider factories by name or ``module:attr`` path.

    ``defaults`` passed to the ``create*`` helpers fill in options the caller
    did not set explicitly. The canvas uses this to hand every provider its
    tool list and system instruction without the user repeating them.
    """

    def __init__(self) -> None:
        self._providers: Dict[str, ProviderFactory] = {}
        self._imported: Dict[str, ProviderFactory] = {}

    def register(self, name: str, factory: ProviderFactory) -> None:
        key = _normalise_name(name)
        if key in self._providers:
            raise ValueError(f"Provider '{name}' is already registered")
        if not callable(factory):
            raise TypeError("factory must be callable")
        self._providers[key] = factory

    def available_providers(self) -> Sequence[str]:
        return sorted(self._providers)

    def create(
        self,
        identifier: str,
        *,
        defaults: Mapping[str, Any] | None = None,
        **options: Any,
    ) -> LLMClient:
        """Instantiate the provider behind ``identifier``.

        Raises:
            KeyError: If a bare name is neither registered nor importable.
            LookupError: If an import path cannot be resolved.
            TypeError: If the factory returns something other than a client.
        """

        factory = self._resolve_factory(identifier)
        merged = dict(defaults or {})
        merged.update(options)
        client = factory(**merged)
        if not isinstance(client, LLMClient):
            raise TypeError("Provider factory did not return an LLMClient instance")
        logger.info(
            "llm.provider_created",
            provider=identifier,
            client=type(client).__name__,
            options=sorted(options),
        )
        return client

    def create_from_config(
        self,
        config: Mapping[str, Any] | str,
        *,
        defaults: Mapping[str, Any] | None = None,
    ) -> LLMClient:
        """Instantiate a provider from ``{"provider": ..., "options": {...}}`` or a name."""

        if isinstance(config, str):
            return self.create(_validate_identifier(config), defaults=defaults)
        if not isinstance(config, Mapping):
            raise TypeError("config must be a mapping or identifier string")
        try:
            provider_value = config["provider"]
        except KeyError as exc:
            raise ValueError("config is missing 'provider'") from exc
        if not isinstance(provider_value, str):
            raise TypeError("config 'provider' must be a string")
        options = _validate_options_mapping(config.get("options", {}))
        return self.create(
            _validate_identifier(provider_value), defaults=defaults, **options
        )

    def create_from_config_file(
        self,
        path: str | Path,
        *,
        defaults: Mapping[str, Any] | None = None,
    ) -> LLMClient:
        """Load a JSON provider config from ``path`` and instantiate it."""

        config_path = Path(path)
        try:
            config = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"{config_path} is not valid JSON: {exc}") from exc
        return self.create_from_config(config, defaults=defaults)

    def create_from_cli(
        self,
        provider: str,
        option_strings: Sequence[str] | None = None,
        *,
        defaults: Mapping[str, Any] | None = None,
    ) -> LLMClient:
        """Instantiate a provider using ``key=value`` option strings."""

        options = parse_cli_options(option_strings or ())
        return self.create(_validate_identifier(provider), defaults=defaults, **options)

    def _resolve_factory(self, identifier: str) -> ProviderFactory:
        name = _validate_identifier(identifier)
        provider = self._providers.get(name.lower())
        if provider is not None:
            return provider
        if name in self._imported:
            return self._imported[name]
        if ":" not in name and "." not in name:
            raise KeyError(f"No provider registered under '{identifier}'")

        factory = _import_factory(name)
        self._imported[name] = factory
        return factory


def _import_factory(identifier: str) -> ProviderFactory:
    if ":" in identifier:
        module_name, _, attr_name = identifier.partition(":")
    else:
        module_name, _, attr_name = identifier.rpartition(".")
    if not module_name or not attr_name:
        raise ValueError("Dynamic provider identifiers must include a module and attribute")

    try:
        module = importlib.import_module(module_name)
    except ModuleNotFoundError as exc:
        raise LookupError(f"Could not import provider module '{module_name}'") from exc
    factory = getattr(module, attr_name, None)
    if factory is None:
        raise LookupError(f"Factory '{attr_name}' not found in module '{module_name}'")
    if not callable(factory):
        raise TypeError(
            f"Imported attribute '{attr_name}' from '{module_name}' is not callable"
        )
    return factory


def parse_cli_options(option_strings: Sequence[str]) -> Dict[str, Any]:
    """Parse ``key=value`` pairs, decoding values as JSON when possible."""

    options: Dict[str, Any] = {}
    for entry in option_strings:
        if not isinstance(entry, str):
            raise TypeError("CLI option entries must be strings")
        key, sep, raw_value = entry.partition("=")
        if not sep:
            raise ValueError(f"CLI option '{entry}' must be in 'key=value' format")
        key = key.strip()
        if not key:
            raise ValueError("CLI option keys must be non-empty")
        if key in options:
            raise ValueError(f"CLI option '{key}' provided multiple times")
        value = raw_value.strip()
        try:
            options[key] = json.loads(value) if value else ""
        except json.JSONDecodeError:
            options[key] = value
    return options


def _normalise_name(name: str) -> str:
    return _validate_identifier(name).lower()


def _validate_identifier(identifier: str) -> str:
    if not isinstance(identifier, str):
        raise TypeError("provider identifier must be a string")
    stripped = identifier.strip()
    if not stripped:
        raise ValueError("provider identifier must be non-empty")
    return stripped


def _validate_options_mapping(options: Any) -> Dict[str, Any]:
    if not isinstance(options, Mapping):
        raise TypeError("config 'options' must be a mapping of keyword arguments")
    validated: Dict[str, Any] = {}
    for key, value in options.items():
        if not isinstance(key, str):
            raise TypeError("option keys must be strings")
        validated[key] = value
    return validated


__all__ = ["LLMProviderRegistry", "ProviderFactory", "parse_cli_options"]
