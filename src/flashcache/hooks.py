"""Lifecycle hooks around installs, snapshots and syncs."""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class HookPoint(str, Enum):
    PRE_INSTALL = "pre-install"
    POST_INSTALL = "post-install"
    PRE_SNAPSHOT = "pre-snapshot"
    POST_SNAPSHOT = "post-snapshot"
    PRE_RESTORE = "pre-restore"
    POST_RESTORE = "post-restore"
    PRE_SYNC = "pre-sync"
    POST_SYNC = "post-sync"
    PRE_CLEAN = "pre-clean"
    POST_CLEAN = "post-clean"


@dataclass
class HookContext:
    """What a hook callback gets to see.

    Attributes:
        project_dir: Project being operated on (None for cache-wide work)
        package_manager: 'npm', 'yarn' or 'pnpm' when known
        dependencies: Resolved dependency map
        options: Operation-specific values (e.g. the install report)
    """

    project_dir: Optional[Path] = None
    package_manager: Optional[str] = None
    dependencies: Dict[str, str] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=dict)


HookCallback = Callable[[HookContext], Any]


class HookRegistry:
    """Plain callback registry.

    Callbacks run in registration order. A callback that raises is
    logged and skipped; it never aborts the operation that ran it.

    Examples:
        >>> hooks = HookRegistry()
        >>> hooks.register(HookPoint.POST_INSTALL, lambda ctx: print("done"))
        >>> hooks.run(HookPoint.POST_INSTALL, HookContext())
        done
        1
    """

    def __init__(self):
        self._hooks: Dict[HookPoint, List[HookCallback]] = defaultdict(list)

    def register(self, point: HookPoint, callback: HookCallback) -> None:
        self._hooks[HookPoint(point)].append(callback)

    def unregister(self, point: HookPoint, callback: HookCallback) -> bool:
        callbacks = self._hooks.get(HookPoint(point), [])
        if callback in callbacks:
            callbacks.remove(callback)
            return True
        return False

    def callbacks(self, point: HookPoint) -> List[HookCallback]:
        return list(self._hooks.get(HookPoint(point), []))

    def run(self, point: HookPoint, context: HookContext) -> int:
        """Run the callbacks of ``point``.

        Returns:
            Number of callbacks that completed without raising
        """
        completed = 0
        for callback in self.callbacks(point):
            name = getattr(callback, "__name__", repr(callback))
            try:
                callback(context)
                completed += 1
            except Exception as e:
                logger.warning(f"Hook {name} for {HookPoint(point).value} failed, continuing: {e}")
                logger.debug(f"Hook {name} failure", exc_info=True)
        return completed
