"""Import map support for bare specifiers."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)


class ModuleResolver:
    """Resolves bare specifiers through an import map's ``imports`` table.

    An exact key match wins. Otherwise the longest key that ends with ``/``
    and prefixes the specifier maps it to ``value + remainder``.
    """

    def __init__(self, import_map: Optional[Mapping[str, Any]] = None):
        self._exact: Dict[str, str] = {}
        self._prefixes: Dict[str, str] = {}
        imports = (import_map or {}).get("imports", {})
        if not isinstance(imports, Mapping):
            logger.warning("Ignoring import map: 'imports' is not an object")
            return
        for key, value in imports.items():
            if not isinstance(key, str) or not isinstance(value, str):
                logger.warning("Ignoring import map entry %r: %r", key, value)
                continue
            if key.endswith("/"):
                if not value.endswith("/"):
                    logger.warning("Ignoring import map entry %r: target must end with '/'", key)
                    continue
                self._prefixes[key] = value
            else:
                self._exact[key] = value

    def resolve(self, specifier: str) -> Optional[str]:
        """Return the mapped URL, or None if the map does not cover it."""
        mapped = self._exact.get(specifier)
        if mapped is not None:
            return mapped
        best = None
        for prefix in self._prefixes:
            if specifier.startswith(prefix) and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is None:
            return None
        return self._prefixes[best] + specifier[len(best):]
