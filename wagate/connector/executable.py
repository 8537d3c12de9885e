"""Browser executable discovery for constrained hosts (containers, PaaS dynos with custom Chrome buildpacks)."""

import glob
import logging
import os
import platform
import shutil
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

# Command names tried via PATH lookup
_WHICH_NAMES = (
    "google-chrome",
    "google-chrome-stable",
    "chromium",
    "chromium-browser",
    "chrome",
)

_LINUX_PATHS = (
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/snap/bin/chromium",
    "/app/.apt/usr/bin/google-chrome",
    "/app/.chrome-for-testing/chrome-linux64/chrome",
    "/opt/google/chrome/chrome",
)
_DARWIN_PATHS = (
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
)
_WINDOWS_PATHS = (
    r"C:\Program Files\Google\Chrome\Application\chrome.exe",
    r"C:\Program Files (x86)\Google\Chrome\Application\chrome.exe",
)

# Layouts under browser cache directories (Puppeteer and Playwright downloads)
_CACHE_GLOBS = (
    "chrome/*/chrome-linux64/chrome",
    "chrome/*/chrome-linux/chrome",
    "chromium-*/chrome-linux/chrome",
    "chromium-*/chrome-linux64/chrome",
    "chromium_headless_shell-*/chrome-linux/headless_shell",
    "chrome/*/chrome-mac*/*.app/Contents/MacOS/*",
    "chromium-*/chrome-mac/Chromium.app/Contents/MacOS/Chromium",
)


def _well_known_paths() -> Sequence[str]:
    system = platform.system()
    if system == "Darwin":
        return _DARWIN_PATHS
    if system == "Windows":
        return _WINDOWS_PATHS
    return _LINUX_PATHS


def _is_executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


class ExecutableResolver:
    """
    Resolve a Chrome/Chromium executable.

    Order: explicit overrides (CHROME_BIN, PUPPETEER_EXECUTABLE_PATH, GOOGLE_CHROME_BIN, browser.executable_path),
    browser cache directories, PATH lookup, well-known install locations. launch_candidates() always ends
    with None so the automation library can fall back to its own bundled browser.
    """

    def __init__(
        self,
        overrides: Optional[Sequence[str]] = None,
        cache_dirs: Optional[Sequence[str]] = None,
        which: Callable[[str], Optional[str]] = shutil.which,
        well_known: Optional[Sequence[str]] = None,
        is_executable: Callable[[str], bool] = _is_executable,
    ):
        self.overrides = [p for p in (overrides or []) if p]
        self.cache_dirs = [d for d in (cache_dirs or []) if d]
        self._which = which
        self._well_known = list(well_known) if well_known is not None else list(_well_known_paths())
        self._is_executable = is_executable

    @classmethod
    def from_config(cls, browser_cfg: Optional[Dict[str, Any]] = None) -> "ExecutableResolver":
        """Build from get_browser_config() output."""
        cfg = browser_cfg or {}
        cache_dirs = list(cfg.get("cache_dirs") or [])
        default_cache = Path.home() / ".cache" / "puppeteer"
        if str(default_cache) not in cache_dirs:
            cache_dirs.append(str(default_cache))
        playwright_cache = Path.home() / ".cache" / "ms-playwright"
        if str(playwright_cache) not in cache_dirs:
            cache_dirs.append(str(playwright_cache))
        return cls(overrides=cfg.get("executable_overrides") or [], cache_dirs=cache_dirs)

    def _cache_candidates(self) -> List[str]:
        found: List[str] = []
        for cache_dir in self.cache_dirs:
            if not os.path.isdir(cache_dir):
                continue
            for pattern in _CACHE_GLOBS:
                # Newest build first
                found.extend(sorted(glob.glob(os.path.join(cache_dir, pattern)), reverse=True))
        return found

    def _which_candidates(self) -> List[str]:
        found = []
        for name in _WHICH_NAMES:
            path = self._which(name)
            if path:
                found.append(path)
        return found

    def candidates(self) -> List[str]:
        """All candidate paths in resolution order, de-duplicated (not filtered by existence)."""
        ordered = self.overrides + self._cache_candidates() + self._which_candidates() + self._well_known
        seen = set()
        out = []
        for p in ordered:
            if p not in seen:
                seen.add(p)
                out.append(p)
        return out

    def resolve(self) -> Optional[str]:
        """First existing executable candidate, or None (let the library choose)."""
        for path in self.candidates():
            if self._is_executable(path):
                return path
        return None

    def launch_candidates(self) -> List[Optional[str]]:
        """Executable strategies to try in order: every existing candidate, then None (auto-resolved)."""
        out: List[Optional[str]] = [p for p in self.candidates() if self._is_executable(p)]
        out.append(None)
        return out

    def diagnostics(self) -> Dict[str, Any]:
        """Resolution report for /debug/chrome."""
        from wagate.config.settings import CACHE_DIR_ENV_VARS, EXECUTABLE_ENV_VARS

        env = {name: os.environ.get(name) for name in EXECUTABLE_ENV_VARS + CACHE_DIR_ENV_VARS}
        checked = [
            {"path": p, "exists": os.path.exists(p), "executable": self._is_executable(p)}
            for p in self.candidates()
        ]
        cache = {}
        for d in self.cache_dirs:
            try:
                cache[d] = sorted(os.listdir(d)) if os.path.isdir(d) else None
            except OSError as e:
                cache[d] = f"error: {e}"
        resolved = self.resolve()
        logger.debug("executable diagnostics: resolved=%s checked=%s", resolved, len(checked))
        return {
            "platform": platform.system(),
            "resolved": resolved,
            "env": env,
            "overrides": list(self.overrides),
            "cache_dirs": cache,
            "candidates": checked,
        }
