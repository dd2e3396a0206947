#!/usr/bin/env python3
"""Runtime MCP server installation for the Claude container.

Runs at container startup. Reads the declared ``claude mcp ...`` install
directives, and skips the whole pass when the directive file is unchanged
since the last complete installation (fingerprint match).
"""

from __future__ import annotations

import argparse
import hashlib
import logging
import os
import re
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import (
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Literal,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
)

from dotenv import dotenv_values
from pydantic import BaseModel, Field

logger = logging.getLogger("mcp-runtime-bootstrap")

BOOTSTRAP_NAME = "mcp-runtime-bootstrap"
DEFAULT_CONFIG_PATH = Path(
    os.environ.get("MCP_BOOTSTRAP_CONFIG", "/app/mcp-servers.txt")
)
DEFAULT_CACHE_DIR = Path(
    os.environ.get("MCP_BOOTSTRAP_CACHE_DIR", str(Path.home() / ".claude" / "cache"))
).expanduser()
CACHE_FILE_NAME = ".mcp-hash"
DEFAULT_ENV_FILE = Path(os.environ.get("MCP_BOOTSTRAP_ENV_FILE", "/app/.env"))
DEFAULT_COMMAND_PREFIX = os.environ.get("MCP_BOOTSTRAP_COMMAND_PREFIX", "claude")
DEFAULT_SHELL = os.environ.get("MCP_BOOTSTRAP_SHELL")
DEFAULT_TIMEOUT = os.environ.get("MCP_BOOTSTRAP_TIMEOUT", "0")
DEFAULT_LOG_LEVEL = os.environ.get("MCP_BOOTSTRAP_LOG_LEVEL", "INFO").upper()

PREVIEW_LENGTH = 100
STRUCTURED_PAYLOAD_MARKER = "add-json"
FINGERPRINT_ALGORITHMS: Tuple[str, ...] = ("md5", "sha256")

_COMMENT_RE = re.compile(r"^\s*#")
_MULTILINE_OPEN_RE = re.compile(r"\{[^}]*$")
_MULTILINE_CLOSE_RE = re.compile(r"\}'\s*$")
_VARIABLE_RE = re.compile(r"\$\{([^}]+)\}")


class BootstrapError(RuntimeError):
    """Raised when the bootstrap pass cannot continue."""


class ConfigUnreadable(BootstrapError):
    """Raised when the directive file exists but cannot be read."""


class SubstitutionUnavailable(BootstrapError):
    """Raised when plain directives need expansion but envsubst is missing."""


# =============================================================================
# Directive parsing
# =============================================================================


def iter_directives(
    lines: Iterable[str], prefix: str = DEFAULT_COMMAND_PREFIX
) -> Iterator[str]:
    """Yield logical directives from raw directive-file lines.

    Blank and comment lines are dropped unless a multi-line directive is
    being accumulated. A line starting with ``prefix`` that leaves a ``{``
    open starts accumulation; the first later line ending in ``}'`` closes it.
    A directive still open when the lines run out is discarded.
    """

    buffer: List[str] = []
    in_multiline = False

    for raw_line in lines:
        line = raw_line.rstrip("\n").rstrip("\r")

        if not in_multiline and (not line.strip() or _COMMENT_RE.match(line)):
            continue

        if line.startswith(prefix) and _MULTILINE_OPEN_RE.search(line):
            if in_multiline:
                logger.debug("Dropping unterminated directive: %s", buffer[0])
            in_multiline = True
            buffer = [line]
            continue

        if in_multiline:
            buffer.append(line)
            if not _MULTILINE_CLOSE_RE.search(line):
                continue
            in_multiline = False
            line = "\n".join(buffer)
            buffer = []

        yield line

    if in_multiline:
        logger.debug("Dropping unterminated directive at end of file: %s", buffer[0])


def _split_lines(text: str) -> List[str]:
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


# =============================================================================
# Fingerprint cache
# =============================================================================


def compute_fingerprint(content: bytes) -> Optional[str]:
    """Return a hex digest of ``content``, or None if no hash is usable."""

    for algorithm in FINGERPRINT_ALGORITHMS:
        try:
            digest = hashlib.new(algorithm, usedforsecurity=False)
        except ValueError:
            logger.debug("Hash algorithm %s unavailable", algorithm)
            continue
        digest.update(content)
        return digest.hexdigest()
    return None


class CacheStore(Protocol):
    def load(self) -> Optional[str]:  # pragma: no cover - typing only
        ...

    def store(self, fingerprint: str) -> bool:  # pragma: no cover - typing only
        ...


class FileCacheStore:
    """Persist the last installed fingerprint as a one-line text file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> Optional[str]:
        try:
            value = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Ignoring unreadable MCP cache %s: %s", self.path, exc)
            return None
        return value or None

    def store(self, fingerprint: str) -> bool:
        """Write the fingerprint; return False if the cache location is unwritable."""

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(f"{fingerprint}\n", encoding="utf-8")
        except OSError as exc:
            logger.warning("Cannot write MCP cache %s: %s", self.path, exc)
            return False
        return True


# =============================================================================
# Variable resolution
# =============================================================================


Substituter = Callable[[str, Mapping[str, str]], str]


@dataclass(frozen=True)
class SkipDirective:
    """Signal that a directive references variables missing from the environment."""

    missing: Tuple[str, ...]


def referenced_variables(directive: str) -> List[str]:
    """Return the distinct ``${NAME}`` names in ``directive``, in order of appearance."""

    return list(dict.fromkeys(_VARIABLE_RE.findall(directive)))


def is_structured_payload(directive: str) -> bool:
    return STRUCTURED_PAYLOAD_MARKER in directive


class Envsubst:
    """Shell-style ``$NAME`` / ``${NAME}`` expansion through gettext's envsubst."""

    def __init__(self, binary: Optional[str] = None) -> None:
        self.binary = binary or shutil.which("envsubst")

    def __call__(self, text: str, environ: Mapping[str, str]) -> str:
        if not self.binary:
            raise SubstitutionUnavailable(
                "envsubst not found. Please install gettext-base."
            )
        try:
            result = subprocess.run(
                [self.binary],
                input=f"{text}\n",
                env=dict(environ),
                capture_output=True,
                text=True,
                errors="surrogateescape",
            )
        except OSError as exc:
            raise SubstitutionUnavailable(
                f"Failed to run envsubst ({self.binary}): {exc}"
            ) from exc
        if result.returncode != 0:
            raise BootstrapError(
                f"envsubst exited with code {result.returncode}: {result.stderr.strip()}"
            )
        return result.stdout.rstrip("\n")


def resolve_directive(
    directive: str,
    environ: Mapping[str, str],
    substitute: Optional[Substituter] = None,
) -> Union[str, SkipDirective]:
    """Substitute variable references in ``directive`` or ask for it to be skipped.

    Any referenced name that is unset or empty yields a ``SkipDirective``.
    ``add-json`` directives get raw literal replacement of each ``${NAME}``
    so the JSON payload keeps its quoting; every other directive goes
    through ``substitute`` (envsubst by default).
    """

    names = referenced_variables(directive)
    if not names:
        return directive

    missing = tuple(name for name in names if not environ.get(name))
    if missing:
        return SkipDirective(missing)

    if is_structured_payload(directive):
        return _VARIABLE_RE.sub(lambda match: environ[match.group(1)], directive)

    if substitute is None:
        substitute = Envsubst()
    return substitute(directive, environ)


def load_env_file(path: Optional[Path], environ: Mapping[str, str]) -> Dict[str, str]:
    """Overlay ``KEY=VALUE`` pairs from a dotenv file onto ``environ``.

    A missing file leaves the environment unchanged; an unreadable one is
    reported and ignored.
    """

    merged = dict(environ)
    if path is None or not path.is_file():
        return merged
    try:
        values = dotenv_values(path)
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Failed to load environment variables from %s: %s", path, exc)
        return merged
    merged.update({key: value for key, value in values.items() if value is not None})
    logger.info("Loaded environment variables from %s", path)
    return merged


# =============================================================================
# Execution
# =============================================================================


@dataclass
class ExecutionOutcome:
    """Result of running a single directive."""

    success: bool
    exit_code: Optional[int] = None
    error: str = ""


class CommandExecutor(Protocol):
    def run(
        self, command: str, environ: Mapping[str, str]
    ) -> ExecutionOutcome:  # pragma: no cover - typing only
        ...


def detect_shell(preferred: Optional[str] = None) -> str:
    """Return the shell used to evaluate directives."""

    if preferred:
        return preferred
    return shutil.which("bash") or "/bin/sh"


class ShellExecutor:
    """Evaluate directives with ``<shell> -c``, one at a time."""

    def __init__(
        self, *, shell: Optional[str] = DEFAULT_SHELL, timeout: Optional[float] = None
    ) -> None:
        self.shell = detect_shell(shell)
        self.timeout = timeout or None

    def run(self, command: str, environ: Mapping[str, str]) -> ExecutionOutcome:
        try:
            result = subprocess.run(
                [self.shell, "-c", command],
                env=dict(environ),
                stdin=subprocess.DEVNULL,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return ExecutionOutcome(
                success=False, error=f"timed out after {self.timeout}s"
            )
        except OSError as exc:
            return ExecutionOutcome(success=False, error=str(exc))
        return ExecutionOutcome(
            success=result.returncode == 0, exit_code=result.returncode
        )


# =============================================================================
# Reports
# =============================================================================


class DirectiveReport(BaseModel):
    """What happened to one directive during an install pass."""

    preview: str = Field(description="Directive text before substitution, truncated")
    status: Literal["installed", "failed", "skipped"] = Field(
        description="installed, failed (pass continued) or skipped (missing variables)"
    )
    missing: List[str] = Field(
        default_factory=list, description="Unresolved variable names for skipped directives"
    )
    exit_code: Optional[int] = Field(None, description="Exit code of the executed command")
    error: str = Field("", description="Execution error when the command could not run")


class BootstrapReport(BaseModel):
    """Summary of one bootstrap run."""

    status: Literal["no_config", "unchanged", "installed"] = Field(
        description="no_config (nothing to do), unchanged (cache hit) or installed (full pass)"
    )
    config_path: str = Field(description="Directive file that was checked")
    fingerprint: Optional[str] = Field(
        None, description="Fingerprint of the directive file, None if hashing is unavailable"
    )
    cached: bool = Field(False, description="Whether the fingerprint was persisted")
    directives: List[DirectiveReport] = Field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for item in self.directives if item.status == status)

    @property
    def installed(self) -> int:
        return self._count("installed")

    @property
    def failed(self) -> int:
        return self._count("failed")

    @property
    def skipped(self) -> int:
        return self._count("skipped")


def _preview(directive: str) -> str:
    return directive[:PREVIEW_LENGTH]


# =============================================================================
# Orchestration
# =============================================================================


class MCPBootstrap:
    """Install declared MCP servers once per directive-file revision."""

    def __init__(
        self,
        *,
        config_path: Path = DEFAULT_CONFIG_PATH,
        cache: Optional[CacheStore] = None,
        executor: Optional[CommandExecutor] = None,
        environ: Optional[Mapping[str, str]] = None,
        env_file: Optional[Path] = DEFAULT_ENV_FILE,
        substitute: Optional[Substituter] = None,
        fingerprint: Callable[[bytes], Optional[str]] = compute_fingerprint,
        prefix: str = DEFAULT_COMMAND_PREFIX,
    ) -> None:
        self.config_path = Path(config_path)
        self.cache = cache or FileCacheStore(DEFAULT_CACHE_DIR / CACHE_FILE_NAME)
        self.executor = executor or ShellExecutor()
        self.environ = os.environ if environ is None else environ
        self.env_file = env_file
        self.substitute = substitute or Envsubst()
        self.fingerprint = fingerprint
        self.prefix = prefix

    def run(self, *, force: bool = False) -> BootstrapReport:
        """Run one bootstrap pass.

        Raises ``ConfigUnreadable`` when the directive file cannot be read and
        ``SubstitutionUnavailable`` when a plain directive needs envsubst and
        it is missing. In both cases the cache is left untouched.
        """

        report = BootstrapReport(status="no_config", config_path=str(self.config_path))

        if not self.config_path.is_file():
            logger.debug("No MCP servers config found at %s - skipping", self.config_path)
            return report

        try:
            content = self.config_path.read_bytes()
        except OSError as exc:
            raise ConfigUnreadable(
                f"Cannot read MCP servers config {self.config_path}: {exc}"
            ) from exc

        current = self.fingerprint(content)
        report.fingerprint = current
        if current is None:
            logger.warning(
                "No hash algorithm available - cannot cache MCP installation"
            )
        elif not force and self.cache.load() == current:
            logger.info("MCP servers already installed (config unchanged)")
            report.status = "unchanged"
            return report

        report.status = "installed"
        logger.info("Installing MCP servers...")
        environ = load_env_file(self.env_file, self.environ)

        text = content.decode("utf-8", errors="surrogateescape")
        for directive in iter_directives(_split_lines(text), prefix=self.prefix):
            report.directives.append(self._install(directive, environ))

        if current is not None and self.cache.store(current):
            report.cached = True
            logger.info("MCP server installation complete (hash cached)")
        else:
            logger.info("MCP server installation complete")
        return report

    def _install(self, directive: str, environ: Mapping[str, str]) -> DirectiveReport:
        preview = _preview(directive)
        resolved = resolve_directive(directive, environ, self.substitute)
        if isinstance(resolved, SkipDirective):
            logger.warning(
                "Skipping MCP server - missing environment variables: %s",
                " ".join(resolved.missing),
            )
            return DirectiveReport(
                preview=preview, status="skipped", missing=list(resolved.missing)
            )

        logger.info("Executing: %s...", preview)
        outcome = self.executor.run(resolved, environ)
        if outcome.success:
            logger.info("Successfully installed MCP server")
            status = "installed"
        else:
            if outcome.error:
                logger.warning("MCP server command did not run: %s", outcome.error)
            logger.warning("Failed to install MCP server (continuing)")
            status = "failed"
        logger.info("---")
        return DirectiveReport(
            preview=preview,
            status=status,
            exit_code=outcome.exit_code,
            error=outcome.error,
        )


# =============================================================================
# Command line
# =============================================================================


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=BOOTSTRAP_NAME,
        description="Install MCP servers declared in the container's directive file",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f"Directive file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--cache-file",
        type=Path,
        default=DEFAULT_CACHE_DIR / CACHE_FILE_NAME,
        help="File holding the fingerprint of the last installed config",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=DEFAULT_ENV_FILE,
        help=f"Secrets file loaded before installing (default: {DEFAULT_ENV_FILE})",
    )
    parser.add_argument(
        "--prefix",
        default=DEFAULT_COMMAND_PREFIX,
        help="Command prefix that may open a multi-line directive",
    )
    parser.add_argument("--shell", default=DEFAULT_SHELL, help="Shell used to run directives")
    parser.add_argument(
        "--timeout",
        type=int,
        default=DEFAULT_TIMEOUT,
        help="Per-directive timeout in seconds (0 disables it)",
    )
    parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Reinstall even if the config is unchanged",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the run report as JSON on stdout",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--quiet", "-q", action="store_true", help="Only log warnings")
    verbosity.add_argument("--verbose", "-v", action="store_true", help="Log debug output")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    level: Union[int, str] = DEFAULT_LOG_LEVEL
    if args.quiet:
        level = logging.WARNING
    elif args.verbose:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(message)s")

    bootstrap = MCPBootstrap(
        config_path=args.config,
        cache=FileCacheStore(args.cache_file),
        executor=ShellExecutor(shell=args.shell, timeout=args.timeout),
        env_file=args.env_file,
        prefix=args.prefix,
    )
    try:
        report = bootstrap.run(force=args.force)
    except BootstrapError as exc:
        logger.error("Error: %s", exc)
        return 1

    if args.json:
        print(report.model_dump_json(indent=2))
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
