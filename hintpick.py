#!/usr/bin/env python3
import codecs
import contextlib
import functools
import logging
import os
import re
import select
import subprocess
import sys
import termios
import time
import tty
import unicodedata
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from typing import Iterable, Iterator, List, Optional, Tuple

HINT_KEYS = "asdfjkl;ghqweruio"
MAX_MATCHES = 26
CANCEL_KEYS = ("q", "\x1b", "\x03")
TTY_DEVICE = "/dev/tty"
PASTE_PREFIX = "PASTE:"
TAB_WIDTH = 8


class HintPickError(Exception):
    """Base class for errors that abort a hintpick run."""


class DeviceUnavailableError(HintPickError):
    def __init__(self, device: str, reason: Exception):
        super().__init__(f"cannot use terminal {device}: {reason}")
        self.device = device
        self.reason = reason


class CommandError(HintPickError):
    def __init__(self, cmd: list, returncode: Optional[int], stderr: str = ""):
        detail = stderr.strip() or (
            "could not be started" if returncode is None else f"exit {returncode}"
        )
        super().__init__(f"command failed: {' '.join(cmd)} ({detail})")
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr


@functools.lru_cache(maxsize=1)
def _get_all_tmux_options() -> dict:
    """Batch read all tmux options in one subprocess call."""
    try:
        result = subprocess.run(
            ["tmux", "show-options", "-g"], capture_output=True, text=True, check=False
        )
        options = {}
        for line in result.stdout.strip().split("\n"):
            if " " in line:
                key, value = line.split(" ", 1)
                options[key] = value.strip('"')
        return options
    except OSError:
        # Not running under tmux (or tmux missing): every option takes its default
        return {}


def get_tmux_option(option: str, default: str) -> str:
    """Get tmux option value, falling back to default if not set."""
    return _get_all_tmux_options().get(option, default)


@dataclass
class Config:
    """Runtime toggles for hintpick, read from global tmux options."""

    debug: bool = field(default=False, metadata={"opt": "@hintpick-debug"})
    perf: bool = field(default=False, metadata={"opt": "@hintpick-perf"})
    log_file: str = field(
        default="~/hintpick.log", metadata={"opt": "@hintpick-log-file"}
    )

    @classmethod
    def from_tmux(cls) -> "Config":
        """Load configuration from tmux options."""
        kwargs = {}
        for f in fields(cls):
            default_str = str(f.default).lower() if f.type is bool else f.default
            raw = get_tmux_option(f.metadata["opt"], default_str)
            kwargs[f.name] = raw.lower() == "true" if f.type is bool else raw
        return cls(**kwargs)


def setup_logging(config: Config):
    """Send logs to the configured file, or silence them entirely."""
    if not (config.debug or config.perf):
        logging.getLogger().disabled = True
        return

    logging.basicConfig(
        filename=os.path.expanduser(config.log_file),
        level=logging.DEBUG,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )


def perf_timer(func_name=None):
    """Performance timing decorator that only logs when perf is enabled"""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            perf = get_tmux_option("@hintpick-perf", "false").lower() == "true"
            if not perf:
                return func(*args, **kwargs)

            name = func_name or func.__name__
            start_time = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                end_time = time.perf_counter()
                logging.info(f"{name} took: {end_time - start_time:.3f} seconds")

        return wrapper

    return decorator


# ---------------------------------------------------------------------------
# Patterns and matches
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Pattern:
    """A single-line recognizer. Group 1, when present, narrows the match."""

    name: str
    regex: "re.Pattern"

    def finditer(self, line: str) -> Iterator[Tuple[str, int, int]]:
        for m in self.regex.finditer(line):
            group = 1 if self.regex.groups and m.start(1) != -1 else 0
            yield m.group(group), m.start(group), m.end(group)


# Order is hint priority
PATTERNS: Tuple[Pattern, ...] = (
    Pattern("url", re.compile(r"""https?://[^\s<>"{}|\\^`\[\]]+""")),
    # Must start a token, so "//host" inside a URL or "/b" in "a/b" is skipped
    Pattern("path", re.compile(r"(?<![\w:/.~@-])(?:~|\.{1,2})?/[a-zA-Z0-9._@\-/]+")),
    Pattern("git-status", re.compile(r"^[\sMADRCU?!]{2,3}([^\s].+?)$")),
    Pattern("ls-long", re.compile(r"^[drwx-]{10}.*[\d:]+\s+(.+)$")),
    Pattern("pid", re.compile(r"^\s*\d+\s+[A-Z]\s+\d+\s+(\d{3,7})\b")),
    Pattern("hash", re.compile(r"\b[0-9a-f]{7,40}\b")),
    Pattern("ipv4", re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")),
)


@dataclass(frozen=True)
class Match:
    text: str
    line: int
    start: int
    end: int
    hint: str


@dataclass(frozen=True)
class Selection:
    match: Match
    paste: bool = False

    @property
    def text(self) -> str:
        return self.match.text


def split_lines(content: str) -> List[str]:
    """Split on newlines only, dropping a trailing CR and the empty tail."""
    if not content:
        return []
    lines = content.split("\n")
    if lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


@perf_timer("Finding matches")
def extract(content: str, exclude: Optional[str] = None) -> List[Match]:
    """Scan content line by line and label every distinct token with a hint.

    Lines are visited top to bottom, patterns in PATTERNS order, and each
    pattern's matches left to right. A candidate equal to ``exclude`` or to an
    already accepted text is skipped. Scanning stops as soon as every hint key
    is used (or MAX_MATCHES is reached, whichever comes first).
    """
    limit = min(MAX_MATCHES, len(HINT_KEYS))
    matches: List[Match] = []
    seen = set()

    for line_num, line in enumerate(split_lines(content)):
        for pattern in PATTERNS:
            for text, start, end in pattern.finditer(line):
                if exclude is not None and text == exclude:
                    continue
                if text in seen:
                    continue

                seen.add(text)
                matches.append(
                    Match(
                        text=text,
                        line=line_num,
                        start=start,
                        end=end,
                        hint=HINT_KEYS[len(matches)],
                    )
                )
                logging.debug(f"{pattern.name}: {text!r} -> {matches[-1].hint}")
                if len(matches) >= limit:
                    logging.debug(f"Hint keys exhausted at line {line_num}")
                    return matches

    return matches


# ---------------------------------------------------------------------------
# Drawing
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=1024)
def get_char_width(char: str) -> int:
    """Get visual width of a single character with caching"""
    return 2 if unicodedata.east_asian_width(char) in "WF" else 1


@functools.lru_cache(maxsize=1024)
def get_string_width(s: str) -> int:
    """Calculate visual width of string, accounting for double-width characters"""
    return sum(map(get_char_width, s))


def expand_tabs(line: str) -> str:
    """Replace tabs with spaces up to the next tab stop, as a terminal shows them"""
    out = []
    col = 0
    for ch in line:
        if ch == "\t":
            pad = TAB_WIDTH - col % TAB_WIDTH
            out.append(" " * pad)
            col += pad
        else:
            out.append(ch)
            col += get_char_width(ch)
    return "".join(out)


class Screen(ABC):
    A_NORMAL = 0
    A_HINT = 1
    A_HIGHLIGHT = 2

    @abstractmethod
    def transform_attr(self, attr):
        """Transform generic attributes to implementation-specific attributes"""
        pass

    @abstractmethod
    def init(self):
        """Take over the display"""
        pass

    @abstractmethod
    def cleanup(self):
        """Give the display back"""
        pass

    @abstractmethod
    def addstr(self, y: int, x: int, text: str, attr=0):
        """Add string with attributes"""
        pass

    @abstractmethod
    def refresh(self):
        """Refresh the screen"""
        pass

    @abstractmethod
    def clear(self):
        """Clear the screen"""
        pass

    @abstractmethod
    def hide_cursor(self):
        pass


class AnsiSequence(Screen):
    # ANSI escape sequences
    ESC = "\033"
    CLEAR = f"{ESC}[2J"
    HIDE_CURSOR = f"{ESC}[?25l"
    SHOW_CURSOR = f"{ESC}[?25h"
    ALT_SCREEN = f"{ESC}[?1049h"
    MAIN_SCREEN = f"{ESC}[?1049l"
    RESET = f"{ESC}[0m"
    BOLD_RED = f"{ESC}[1;31m"
    BLACK_ON_YELLOW = f"{ESC}[30;43m"

    def __init__(self, out):
        self.out = out

    def init(self):
        self.out.write(self.ALT_SCREEN)
        self.out.write(self.HIDE_CURSOR)
        self.out.flush()

    def cleanup(self):
        self.out.write(self.SHOW_CURSOR)
        self.out.write(self.RESET)
        self.out.write(self.MAIN_SCREEN)
        self.out.flush()

    def transform_attr(self, attr):
        if attr == self.A_HINT:
            return self.BOLD_RED
        elif attr == self.A_HIGHLIGHT:
            return self.BLACK_ON_YELLOW
        return ""

    def addstr(self, y: int, x: int, text: str, attr=0):
        attr_str = self.transform_attr(attr)
        if attr_str:
            self.out.write(f"{self.ESC}[{y + 1};{x + 1}H{attr_str}{text}{self.RESET}")
        else:
            self.out.write(f"{self.ESC}[{y + 1};{x + 1}H{text}")

    def refresh(self):
        self.out.flush()

    def clear(self):
        self.out.write(self.CLEAR)

    def hide_cursor(self):
        self.out.write(self.HIDE_CURSOR)


def hint_label(hint: str) -> str:
    return f"[{hint}]"


@perf_timer("Drawing overlay")
def render(
    screen: Screen,
    content: str,
    matches: List[Match],
    highlighted: Optional[int] = None,
):
    """Draw the captured text and a hint label right after every match.

    The highlighted match, if any, is redrawn in the inverse style. Match
    offsets are character indices; they are turned into screen columns by
    visual width, with tabs expanded to the next stop, so lines stay aligned.
    """
    lines = split_lines(content)

    screen.clear()
    screen.hide_cursor()
    for y, line in enumerate(lines):
        screen.addstr(y, 0, expand_tabs(line))

    for idx, match in enumerate(matches):
        line = lines[match.line]
        # Tab expansion only depends on what precedes, so prefixes stay stable
        before = expand_tabs(line[: match.start])
        through = expand_tabs(line[: match.end])
        if idx == highlighted:
            x = get_string_width(before)
            screen.addstr(match.line, x, through[len(before) :], screen.A_HIGHLIGHT)
        hint_x = get_string_width(through)
        screen.addstr(match.line, hint_x, hint_label(match.hint), screen.A_HINT)

    screen.refresh()


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------


def read_keys(fd: int, escape_timeout: float = 0.05) -> Iterator[str]:
    """Yield key events from a raw-mode terminal until it reaches EOF.

    Plain keys come out as one character. An escape byte followed at once by
    more input (arrows, function keys) is returned as a single multi-character
    event; a lone escape comes out as "\\x1b".
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = os.read(fd, 1)
        if not data:
            return
        if data == b"\x1b":
            yield _read_escape_sequence(fd, escape_timeout)
            continue
        text = decoder.decode(data)
        if text:
            yield text


def _read_escape_sequence(fd: int, timeout: float) -> str:
    ready, _, _ = select.select([fd], [], [], timeout)
    if not ready:
        return "\x1b"

    seq = b"\x1b" + os.read(fd, 1)
    if seq == b"\x1b[":
        # CSI: parameter bytes up to a final byte in @..~
        while True:
            byte = os.read(fd, 1)
            seq += byte
            if not byte or 0x40 <= byte[0] <= 0x7E:
                break
    elif seq == b"\x1bO":
        seq += os.read(fd, 1)
    return seq.decode("utf-8", errors="replace")


def select_match(matches: List[Match], keys: Iterable[str]) -> Optional[Selection]:
    """Wait for a hint key. Uppercase means the caller should paste.

    Returns None when the user cancels or the key stream runs dry.
    """
    by_hint = {m.hint: m for m in matches}
    for key in keys:
        if key in CANCEL_KEYS:
            logging.info("Operation cancelled by user")
            return None
        if len(key) != 1:
            logging.debug(f"Ignoring key sequence {key!r}")
            continue
        match = by_hint.get(key.lower())
        if match:
            logging.debug(f"Selected {match.text!r} with {key!r}")
            return Selection(match, paste=key.isupper())
        logging.debug(f"No hint for {key!r}")
    return None


# ---------------------------------------------------------------------------
# Terminal session
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def terminal_session(device: str = TTY_DEVICE):
    """Own the controlling terminal for the duration of the block.

    Opens the device directly so piped stdin/stdout are left alone, switches
    it to raw mode and the alternate screen, and yields ``(screen, fd)``.
    Cursor, screen buffer and termios state are restored however the block
    exits.
    """
    with contextlib.ExitStack() as stack:
        try:
            reader = stack.enter_context(open(device, "rb", buffering=0))
            writer = stack.enter_context(open(device, "w", encoding="utf-8"))
            fd = reader.fileno()
            old_settings = termios.tcgetattr(fd)
            tty.setraw(fd)
        except (OSError, termios.error) as e:
            raise DeviceUnavailableError(device, e) from e

        try:
            screen = AnsiSequence(writer)
            screen.init()
            try:
                yield screen, fd
            finally:
                screen.cleanup()
        finally:
            termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)


@perf_timer("Total selection")
def run_selector(
    content: str, exclude: Optional[str] = None, device: str = TTY_DEVICE
) -> Optional[Selection]:
    """Find matches, show the overlay and wait for a hint key."""
    matches = extract(content, exclude)
    if not matches:
        sys.stderr.write("No matches found\n")
        return None

    with terminal_session(device) as (screen, fd):
        render(screen, content, matches)
        return select_match(matches, read_keys(fd))


# ---------------------------------------------------------------------------
# External commands and entry points
# ---------------------------------------------------------------------------


def sh(cmd: list, input: Optional[str] = None) -> str:
    """Execute a command without a shell and return its stdout"""
    try:
        result = subprocess.run(
            cmd,
            shell=False,
            text=True,
            encoding="utf-8",
            errors="replace",
            input=input,
            capture_output=True,
            check=True,
        ).stdout
    except subprocess.CalledProcessError as e:
        logging.error(f"Error executing {cmd}: {str(e)}")
        raise CommandError(cmd, e.returncode, e.stderr or "") from e
    except OSError as e:
        logging.error(f"Could not start {cmd}: {str(e)}")
        raise CommandError(cmd, None, str(e)) from e

    logging.debug(f"Command: {cmd}")
    logging.debug(f"Result: {result}")
    logging.debug("-" * 40)

    return result


def tmux_cmd(*args: str) -> str:
    return sh(["tmux", *args]).strip()


def run_stdin_mode() -> int:
    content = sys.stdin.buffer.read().decode("utf-8", errors="replace")
    if not content.strip():
        sys.stderr.write("No content received\n")
        return 0

    # The prompt usually shows the working directory; don't offer it
    selection = run_selector(content, os.environ.get("PWD"))
    if selection:
        prefix = PASTE_PREFIX if selection.paste else ""
        sys.stdout.write(f"{prefix}{selection.text}\n")
    return 0


def run_tmux_mode() -> int:
    pane_id = tmux_cmd("display-message", "-p", "#{pane_id}")
    pane_path = tmux_cmd("display-message", "-p", "#{pane_current_path}")
    content = tmux_cmd("capture-pane", "-p", "-t", pane_id)
    logging.debug(f"Pane {pane_id} at {pane_path}")

    if not content.strip():
        sys.stderr.write("No content captured from pane\n")
        return 0

    selection = run_selector(content, pane_path)
    if not selection:
        return 0

    sh(["tmux", "load-buffer", "-"], input=selection.text)
    if selection.paste:
        sh(["tmux", "paste-buffer"])
    else:
        sh(["tmux", "display-message", f"Copied: {selection.text}"])
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    setup_logging(Config.from_tmux())

    try:
        if argv and argv[0] == "tmux":
            return run_tmux_mode()
        return run_stdin_mode()
    except KeyboardInterrupt:
        logging.info("Operation cancelled by user")
        return 0
    except (HintPickError, OSError) as e:
        logging.error(f"Error occurred: {str(e)}", exc_info=True)
        sys.stderr.write(f"hintpick: {e}\n")
        return 1


if __name__ == "__main__":
    sys.exit(main())
