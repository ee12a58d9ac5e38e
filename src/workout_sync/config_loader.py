"""
Config file discovery and loading for workout-sync.

Config files live in three scopes, most specific first:

    explicit  ``$WORKOUT_SYNC_CONFIG``
    project   ``./.workout_sync/config.yml`` (or ``config.yaml``)
    user      ``$XDG_CONFIG_HOME/workout_sync/config.yml``
              (``~/.config`` when XDG_CONFIG_HOME is unset)

Each file is parsed with a SafeLoader that also understands ``!include``.
Files are merged section by section, so a user-scope file can hold the
provider token while a project file only sets ``store.dir``.  String
values then get ``${VAR}`` / ``${VAR:-default}`` expansion.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "WORKOUT_SYNC_CONFIG"
PROJECT_DIR_NAME = ".workout_sync"
CONFIG_FILENAMES = ("config.yml", "config.yaml")

# ---------------------------------------------------------------------------
# ${VAR} expansion
# ---------------------------------------------------------------------------

_ENV_REF = re.compile(r"\$\{(?P<name>[^}:]+?)(?::-(?P<default>.*?))?\}")


def expand_env_refs(text: str) -> str:
    """Expand ``${VAR}`` and ``${VAR:-default}`` in *text*.

    An unset variable expands to "" (or to *default*, which also covers
    a variable set to the empty string).  An unterminated ``${`` is kept.
    """

    def _sub(match: re.Match) -> str:
        value = os.environ.get(match["name"])
        if value:
            return value
        return match["default"] or ""

    return _ENV_REF.sub(_sub, text)


def expand_tree(node: Any) -> Any:
    """Apply ``expand_env_refs`` to every string in a parsed YAML tree."""
    if isinstance(node, dict):
        return {key: expand_tree(value) for key, value in node.items()}
    if isinstance(node, list):
        return [expand_tree(value) for value in node]
    if isinstance(node, str):
        return expand_env_refs(node)
    return node


# ---------------------------------------------------------------------------
# YAML with !include
# ---------------------------------------------------------------------------


class IncludeLoader(yaml.SafeLoader):
    """SafeLoader that resolves ``!include <path>`` relative to its file.

    ``chain`` holds the files currently being loaded, outermost first;
    an include that is already on the chain is a cycle.
    """

    def __init__(self, stream, chain: tuple[Path, ...]):
        super().__init__(stream)
        self.chain = chain


def _construct_include(loader: IncludeLoader, node: yaml.ScalarNode) -> Any:
    including = loader.chain[-1]
    target = (including.parent / Path(loader.construct_scalar(node))).resolve()

    if target in loader.chain:
        cycle = " -> ".join(str(p) for p in (*loader.chain, target))
        raise ValueError(f"Circular include detected: {cycle}")
    if not target.is_file():
        raise FileNotFoundError(
            f"Include file not found: {target} (referenced from {including})"
        )
    return read_yaml(target, _chain=loader.chain)


IncludeLoader.add_constructor("!include", _construct_include)


def read_yaml(path: Path, *, _chain: tuple[Path, ...] = ()) -> Any:
    """Parse one YAML file, following ``!include`` directives.

    Raises:
        FileNotFoundError: If an included file does not exist.
        ValueError: If includes form a cycle.
        yaml.YAMLError: On malformed YAML or an unsupported tag.
    """
    path = Path(path).resolve()
    with open(path, encoding="utf-8") as fh:
        loader = IncludeLoader(fh, (*_chain, path))
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def user_config_dir() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    return base / "workout_sync"


def discover_config_files() -> list[Path]:
    """Return existing config files, most specific scope first."""
    candidates: list[Path] = []

    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        candidates.append(Path(explicit).expanduser().resolve())

    project_dir = Path.cwd() / PROJECT_DIR_NAME
    candidates.extend(project_dir / name for name in CONFIG_FILENAMES)
    candidates.append(user_config_dir() / CONFIG_FILENAMES[0])

    return [p for p in candidates if p.is_file()]


def resolve_config_path() -> Path:
    """The file ``init-config`` would use: the first discovered one, or
    the project-scope default."""
    found = discover_config_files()
    if found:
        return found[0]
    return Path.cwd() / PROJECT_DIR_NAME / CONFIG_FILENAMES[0]


# ---------------------------------------------------------------------------
# Starter file
# ---------------------------------------------------------------------------

_STARTER_CONFIG = """\
# workout-sync configuration
#
# Every value can also be set via environment variables
# (WORKOUT_SYNC_PROVIDER_URL, WORKOUT_SYNC_PROVIDER_TOKEN, ...)
# and ${VAR:-default} is interpolated in string values.
#
# store:
#   dir: .workout_sync
#   mirror_dir: ~/Sync/workout_sync
#
# provider:
#   url: https://fitness.example.com/api
#   token: ${WORKOUT_SYNC_PROVIDER_TOKEN}
#   timeout: 30
#   poll_interval: 300
#   region: US
#
# sync:
#   background_window_days: 30
#   manual_window_days: 7
#   force_window_hours: 24
#   foreground_min_interval_minutes: 30
#   timezone: America/New_York
#
# logging:
#   level: INFO
#   file: null
#   format: text
"""


def ensure_config(target: Path | None = None) -> Path:
    """Return the active config file, writing a commented starter first
    when none exists.  An existing file is never modified."""
    found = discover_config_files()
    if found:
        logger.debug("Config file already exists: %s", found[0])
        return found[0]

    path = target or resolve_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", path)
    return path


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def merge_sections(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Overlay *override* onto *base* one level deep.

    Mapping sections merge key by key; any other value replaces the
    base value outright.
    """
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = {**current, **value}
        else:
            merged[key] = value
    return merged


def load_hierarchical_config() -> dict[str, Any]:
    """Load, merge and expand every discovered config file.

    Returns ``{}`` when there are no config files.
    """
    merged: dict[str, Any] = {}
    # least specific first so later files win
    for path in reversed(discover_config_files()):
        logger.debug("Loading config: %s", path)
        data = read_yaml(path)
        if data is None:
            continue
        if not isinstance(data, dict):
            logger.warning(
                "Ignoring config file %s: top level is a %s, not a mapping",
                path,
                type(data).__name__,
            )
            continue
        merged = merge_sections(merged, data)

    return expand_tree(merged)
