"""Discover connection candidates from the user's ssh client config."""

import glob
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Set, Tuple

from smibar.models import AliasCandidate

logger = logging.getLogger(__name__)

SOURCE_SSH_CONFIG = "ssh_config"
_GLOB_CHARS = set("*?[]")


@dataclass
class _HostBlock:
    patterns: List[str]
    host_name: str = ""
    user: str = ""
    port: int = 0


@dataclass
class _ParseContext:
    home: Path
    visited: Set[Path] = field(default_factory=set)
    seen: Set[Tuple[str, str, int]] = field(default_factory=set)
    out: List[AliasCandidate] = field(default_factory=list)


class SSHConfigResolver:
    """Lists literal Host aliases from ~/.ssh/config and everything it Includes.

    Only the directives needed to turn an alias into a connection target are
    understood: Host, HostName, User, Port and Include. Wildcard and negated
    Host patterns are not connection targets and are skipped.

    Discovery is best effort: an unreadable Include is skipped without
    affecting its siblings, and discover() itself never raises.
    """

    def __init__(self, config_path: Optional[str] = None, home: Optional[str] = None):
        self.home = Path(home) if home else Path.home()
        self.config_path = Path(config_path) if config_path else self.home / ".ssh" / "config"

    def discover(self) -> List[AliasCandidate]:
        """Parse the config tree and return candidates sorted by (name, target, port)."""
        ctx = _ParseContext(home=self.home)
        try:
            # is_file() still raises for EACCES on a parent directory.
            if not self.config_path.is_file():
                logger.debug(f"No ssh config at {self.config_path}")
                return []
            self._parse_file(self.config_path, ctx)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to read ssh config {self.config_path}: {e}")
            return []

        candidates = sorted(ctx.out)
        logger.debug(f"Discovered {len(candidates)} ssh config connection(s)")
        return candidates

    def _parse_file(self, path: Path, ctx: _ParseContext) -> None:
        resolved = path.resolve()
        if resolved in ctx.visited:
            return
        ctx.visited.add(resolved)

        block: Optional[_HostBlock] = None
        with open(resolved, encoding="utf-8") as f:
            for raw_line in f:
                line = strip_comments(raw_line).strip()
                if not line:
                    continue

                key, value = split_directive(line)
                key = key.lower()

                if key == "include":
                    for pattern in value.split():
                        for include_path in self._resolve_include(pattern, resolved.parent):
                            try:
                                self._parse_file(include_path, ctx)
                            except (OSError, UnicodeDecodeError) as e:
                                logger.debug(f"Skipping ssh config include {include_path}: {e}")
                elif key == "host":
                    self._flush(block, ctx)
                    block = _HostBlock(patterns=value.split())
                elif block is None:
                    # Global options before the first Host are not tied to an alias.
                    continue
                elif key == "hostname":
                    block.host_name = trim_value(value)
                elif key == "user":
                    block.user = trim_value(value)
                elif key == "port":
                    try:
                        block.port = int(trim_value(value))
                    except ValueError:
                        pass

        self._flush(block, ctx)

    @staticmethod
    def _flush(block: Optional[_HostBlock], ctx: _ParseContext) -> None:
        if block is None:
            return
        for pattern in block.patterns:
            if not pattern or pattern == "*" or pattern.startswith("!"):
                continue
            if "*" in pattern or "?" in pattern:
                continue

            target = block.host_name or pattern
            if block.user:
                target = f"{block.user}@{target}"

            candidate = AliasCandidate(
                name=pattern, target=target, port=block.port, source=SOURCE_SSH_CONFIG
            )
            if candidate.dedup_key in ctx.seen:
                continue
            ctx.seen.add(candidate.dedup_key)
            ctx.out.append(candidate)

    def _resolve_include(self, pattern: str, file_dir: Path) -> List[Path]:
        pattern = trim_value(pattern)
        if pattern == "~":
            pattern = str(self.home)
        elif pattern.startswith("~/"):
            pattern = str(self.home / pattern[2:])
        if not os.path.isabs(pattern):
            pattern = str(file_dir / pattern)

        if _GLOB_CHARS.intersection(pattern):
            matches = sorted(glob.glob(pattern))
        else:
            matches = [pattern]
        return [Path(p) for p in matches if os.path.isfile(p)]


def strip_comments(line: str) -> str:
    """Drop everything from the first # that is not inside quotes."""
    in_single = False
    in_double = False
    for i, ch in enumerate(line):
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        elif ch == "#" and not in_single and not in_double:
            return line[:i]
    return line


def split_directive(line: str) -> Tuple[str, str]:
    """Split "Key  value words" at the first run of whitespace."""
    parts = line.split(None, 1)
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1].strip()


def trim_value(value: str) -> str:
    value = value.strip()
    if value.startswith('"'):
        value = value[1:]
    if value.endswith('"'):
        value = value[:-1]
    return value
