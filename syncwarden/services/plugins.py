from __future__ import annotations

from importlib import import_module
import logging

from syncwarden.core.config import get_settings
from syncwarden.core.errors import ProviderConfigError


logger = logging.getLogger(__name__)

_loaded: set[str] = set()


def ensure_plugins_loaded(modules: list[str] | None = None) -> list[str]:
    """Import provider/handler modules for their registration side effects.

    Each module is imported at most once per process. A module that fails to
    import aborts startup rather than silently leaving a provider without a
    sync routine.
    """
    names = modules if modules is not None else get_settings().plugin_modules
    loaded: list[str] = []
    for module_path in names:
        if module_path in _loaded:
            continue
        try:
            import_module(module_path)
        except ImportError as exc:
            raise ProviderConfigError(f"Cannot import plugin module '{module_path}': {exc}") from exc
        _loaded.add(module_path)
        loaded.append(module_path)
        logger.info("plugin_module_loaded module=%s", module_path)
    return loaded
