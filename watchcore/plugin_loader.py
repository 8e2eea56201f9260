"""
Plugin loader for automatic discovery and registration of diff engines.
"""

import importlib
import inspect
import logging
import pkgutil
from types import ModuleType
from typing import Dict, Iterator, Type

from .interfaces import DiffEngine
from .models import SignalType

logger = logging.getLogger(__name__)

# Package scanned for signal sub-packages
PLUGIN_PACKAGE = "signals"

# Global registry of discovered engine classes
_REGISTRY: Dict[SignalType, Type[DiffEngine]] = {}


def _iter_modules(package_name: str) -> Iterator[ModuleType]:
    """Import every non-private module below ``package_name``."""
    package = importlib.import_module(package_name)
    for info in pkgutil.walk_packages(package.__path__, prefix=f"{package_name}."):
        if info.name.rsplit(".", 1)[-1].startswith("_"):
            continue
        try:
            yield importlib.import_module(info.name)
        except Exception as e:
            logger.error(f"Failed to load module {info.name}: {e}")


def refresh_registry() -> None:
    """Scan the signals package and register DiffEngine subclasses by signal."""
    _REGISTRY.clear()

    module_count = 0
    for mod in _iter_modules(PLUGIN_PACKAGE):
        module_count += 1
        for name, obj in inspect.getmembers(mod, inspect.isclass):
            if (issubclass(obj, DiffEngine)
                    and not inspect.isabstract(obj)
                    and obj.__module__ == mod.__name__):
                signal = obj().signal
                if signal in _REGISTRY and _REGISTRY[signal] is not obj:
                    logger.warning(
                        f"Duplicate engine for {signal.value}: "
                        f"{obj.__name__} replaces {_REGISTRY[signal].__name__}"
                    )
                _REGISTRY[signal] = obj
                logger.debug(f"Registered diff engine: {signal.value} -> {obj.__name__}")

    logger.info(f"Plugin discovery complete: {module_count} modules, {len(_REGISTRY)} engines")


def get(signal: SignalType) -> DiffEngine:
    """Return a fresh engine instance for ``signal``.

    Raises:
        KeyError: If no engine handles the signal
    """
    if not _REGISTRY:
        refresh_registry()

    if signal not in _REGISTRY:
        available = [s.value for s in _REGISTRY]
        raise KeyError(f"No diff engine for '{signal.value}'. Available: {available}")

    return _REGISTRY[signal]()


def list_available() -> Dict[SignalType, Type[DiffEngine]]:
    """Get a copy of all registered engines."""
    if not _REGISTRY:
        refresh_registry()
    return _REGISTRY.copy()
