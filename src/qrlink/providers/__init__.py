"""Link provider implementations and factory lookup."""

import importlib

from qrlink.errors import ConfigError
from qrlink.provider import ProviderFactory


def load_provider_factory(path: str) -> ProviderFactory:
    """Resolve a ``module:attribute`` path to a provider factory.

    Raises:
        ConfigError: If the path is malformed or does not resolve to a callable.
    """
    module_name, sep, attribute = path.partition(":")
    if not sep or not module_name or not attribute:
        raise ConfigError(f"Provider must look like 'module:factory', got {path!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"Cannot import provider module {module_name!r}: {e}") from e

    factory = getattr(module, attribute, None)
    if not callable(factory):
        raise ConfigError(f"Provider factory {path!r} is not callable")
    return factory
