#!/usr/bin/env python3
"""
Name: yargs
Description: run a command once for each delimited item of input
License: perl

Reads standard input, cuts it into items wherever the delimiter pattern
matches, and runs the given command once per item. A bare '.' among the
command's arguments is replaced by the item; when there is none, the item
is added as the last argument. Items are handled strictly one at a time:
the next item is not read until the command for the current one exits.
"""

import sys
import os
import re
import shlex
import subprocess
import time

VERSION = '0.1'

# Exit codes
EX_SUCCESS = 0
EX_FAILURE = 1
EX_USAGE = 2
EX_INTERRUPTED = 130

PROG = 'yargs'

# Each read from the input pulls at most this many bytes.
READ_BUFF_SIZE = 1024
# Optional carriage return followed by a line feed.
DEFAULT_FENCE = r'\r?\n'
DEFAULT_LITERAL_FENCE = '\n'
PLACEHOLDER = '.'
PIPE = '|'

SHELL = 'sh'
SHELL_ARGS = ['-c']
# powershell is fed the command line on stdin.
WIN_SHELL = 'powershell'
WIN_SHELL_ARGS = ['-NoProfile', '-Command', '-']

# Chunker states
AWAITING_DATA = 'awaiting-data'
HAS_PENDING_MATCH = 'has-pending-match'
ERRORED = 'errored'
EXHAUSTED = 'exhausted'

HELP = f"""A friendlier xargs.

Usage: {PROG} [ OPTIONS ] <CMD> [ ARGS... ]

Arguments:
  <CMD>      Command to execute for each item of input
  [ARGS...]  Additional arguments to <CMD>; a bare '.' is replaced by
             the item, otherwise the item is added at the end

Options:
  -d, --delimiter <DELIM>  Regex to delimit input items
                           (default is "\\r?\\n")
  -F, --fixed-string       Treat the delimiter as a literal string
  -s, --subshell           Run each command line through the shell;
                           a bare '|' argument is passed to it unquoted
  -c, --continue           Continue and ignore errors
                           (default is to halt upon error)
  -t, --trace              Print each command before running it
  -h, --help               Print this message
  -V, --version            Print version information"""


class YargsError(Exception):
    """Base class for the errors that stop yargs."""


class InvalidPattern(YargsError):
    pass


class SourceReadError(YargsError):
    pass


class EncodingError(YargsError):
    pass


# --- Fences: locating delimiters in a byte buffer ---

class RegexFence:
    """
    A delimiter given as a regular expression. Matching is done on raw
    bytes, so it does not care how the input is encoded.
    """
    # Any earlier part of the buffer may take part in a match.
    width = None

    def __init__(self, pattern):
        self.pattern = pattern
        try:
            self.regex = re.compile(os.fsencode(pattern))
        except re.error as e:
            raise InvalidPattern(f'invalid regex pattern "{pattern}": {e}') from e

    def find(self, buffer, start=0):
        """
        Returns (start, end) of the leftmost non-empty match in buffer,
        or None. Empty matches never delimit an item.
        """
        for match in self.regex.finditer(buffer, start):
            if match.end() > match.start():
                return match.span()
        return None


class LiteralFence:
    """A delimiter given as a literal byte string."""

    def __init__(self, delimiter):
        if isinstance(delimiter, str):
            delimiter = os.fsencode(delimiter)
        if not delimiter:
            raise InvalidPattern('delimiter string must not be empty')
        self.pattern = delimiter
        self.width = len(delimiter)

    def find(self, buffer, start=0):
        index = buffer.find(self.pattern, start)
        if index < 0:
            return None
        return index, index + self.width


def make_fence(pattern=None, fixed=False):
    """Builds the fence for a -d value, falling back to the newline default."""
    if fixed:
        return LiteralFence(DEFAULT_LITERAL_FENCE if pattern is None else pattern)
    return RegexFence(DEFAULT_FENCE if pattern is None else pattern)


# --- Item codec ---

class ItemCodec:
    """
    Turns the raw bytes of an item into what the process backend takes.

    POSIX accepts arbitrary bytes as arguments, so items pass through as
    bytes. Windows needs text, so there items must be valid UTF-8.
    """

    def __init__(self, text_required=None):
        if text_required is None:
            text_required = sys.platform == 'win32'
        self.text_required = text_required

    def decode(self, data):
        if not self.text_required:
            return bytes(data)
        try:
            return bytes(data).decode('utf-8')
        except UnicodeDecodeError as e:
            raise EncodingError(f'input not valid UTF-8: {e}') from e


# --- Chunker ---

class Chunker:
    """
    Iterates over the items of a byte source, cut apart by a fence.

    Input is pulled READ_BUFF_SIZE bytes at a time and collected in a search
    buffer until the fence matches. The fence is always run over the whole
    buffer, so a delimiter split across two reads is still found. The bytes
    of the delimiter itself are dropped.

    A read error is raised once as SourceReadError, and an item that fails
    to decode raises EncodingError. After either, iteration just stops.
    """

    def __init__(self, source, fence, codec=None):
        self.source = source
        self.fence = fence
        self.codec = codec or ItemCodec()
        self.read_buff = bytearray(READ_BUFF_SIZE)
        self.search_buff = bytearray()
        self.state = AWAITING_DATA
        # search_buff holds no match that starts before this offset.
        self.scanned = 0
        # readinto1 returns as soon as some input is available.
        self._readinto = getattr(source, 'readinto1', None) or source.readinto

    def __iter__(self):
        return self

    def __next__(self):
        while True:
            if self.state in (EXHAUSTED, ERRORED):
                raise StopIteration

            # A match was just cut out; what follows it may hold another
            # one, so look there before reading again.
            if self.state == HAS_PENDING_MATCH:
                item = self._scan()
                if item is not None:
                    return self._emit(item)
                self.state = AWAITING_DATA
                continue

            count = self._read()
            if count is None:
                time.sleep(0)
                continue

            if count == 0:
                self.state = EXHAUSTED
                if not self.search_buff:
                    raise StopIteration
                item = bytes(self.search_buff)
                del self.search_buff[:]
                return self._emit(item)

            self.search_buff += self.read_buff[:count]
            item = self._scan()
            if item is not None:
                self.state = HAS_PENDING_MATCH
                return self._emit(item)

    def _read(self):
        """
        Reads once from the source. Returns the number of bytes read, 0 at
        end of input, or None if the read should be tried again.
        """
        try:
            return self._readinto(self.read_buff)
        except (BlockingIOError, InterruptedError):
            return None
        except OSError as e:
            self.state = ERRORED
            raise SourceReadError(f'error reading input: {e}') from e

    def _scan(self):
        """
        Cuts the part before the first match out of the search buffer and
        returns it, leaving what follows the match. Returns None if there
        is no match yet.
        """
        span = self.fence.find(self.search_buff, self.scanned)
        if span is None:
            if self.fence.width:
                self.scanned = max(0, len(self.search_buff) - self.fence.width + 1)
            return None
        start, end = span
        item = bytes(self.search_buff[:start])
        del self.search_buff[:end]
        self.scanned = 0
        return item

    def _emit(self, data):
        try:
            return self.codec.decode(data)
        except EncodingError:
            self.state = ERRORED
            raise


# --- Argument substitution ---

class CommandTemplate:
    """The command to run: a program plus argument tokens."""

    def __init__(self, program, args=(), placeholder=PLACEHOLDER):
        self.program = program
        self.args = tuple(args)
        self.placeholder = placeholder

    def __repr__(self):
        return f"CommandTemplate({self.program!r}, {list(self.args)!r})"


class ArgumentPlan:
    """
    What the backend is asked to run for one item: either an argument
    vector, run directly, or a single line for the shell.
    """

    def __init__(self, argv=None, shell_line=None):
        self.argv = argv
        self.shell_line = shell_line

    @property
    def subshell(self):
        return self.shell_line is not None

    def display(self) -> str:
        """The command line as it is shown in diagnostics."""
        if self.subshell:
            return self.shell_line
        return shlex.join(os.fsdecode(arg) for arg in self.argv)

    def spawned(self) -> str:
        """The command line actually started, shell included."""
        if not self.subshell:
            return self.display()
        if sys.platform == 'win32':
            return f"{shlex.join([WIN_SHELL] + WIN_SHELL_ARGS)} < {shlex.quote(self.shell_line)}"
        return shlex.join([SHELL] + SHELL_ARGS + [self.shell_line])


def shell_quote(token) -> str:
    """Quotes a single word for the shell that runs subshell lines."""
    if isinstance(token, bytes):
        # surrogateescape keeps undecodable bytes intact on the way back out.
        token = os.fsdecode(token)
    if sys.platform == 'win32':
        return subprocess.list2cmdline([token])
    return shlex.quote(token)


def substitute(template, item, subshell=False, escape=None):
    """
    Builds the ArgumentPlan for running template on item.

    Every argument that is exactly the placeholder is replaced by the item;
    a placeholder inside a longer argument is left alone. If no argument
    was replaced, the item is appended. In subshell mode every word is
    quoted with escape, except a bare '|' from the template, which is
    passed through so the line can form a pipeline.
    """
    words = []
    subbed = False
    for token in template.args:
        if token == template.placeholder:
            words.append((item, True))
            subbed = True
        else:
            words.append((token, False))
    if not subbed:
        words.append((item, True))

    if not subshell:
        return ArgumentPlan(argv=[template.program] + [word for word, _ in words])

    escape = escape or shell_quote
    line = [escape(template.program)]
    for word, is_item in words:
        if word == PIPE and not is_item:
            line.append(PIPE)
        else:
            line.append(escape(word))
    return ArgumentPlan(shell_line=' '.join(line))


# --- Execution ---

class ProcessBackend:
    """Runs commands with subprocess and reports their return codes."""

    def run(self, argv):
        return subprocess.run(argv).returncode

    def run_shell(self, line):
        if sys.platform == 'win32':
            # communicate() closes stdin once the line is written, otherwise
            # powershell sits waiting for more input.
            proc = subprocess.Popen([WIN_SHELL] + WIN_SHELL_ARGS, stdin=subprocess.PIPE)
            proc.communicate(line.encode('utf-8'))
            return proc.returncode
        return subprocess.run([SHELL] + SHELL_ARGS + [line]).returncode


class Outcome:
    """How running the command for one item went."""
    SUCCESS = 'success'
    NONZERO_EXIT = 'nonzero-exit'
    SIGNAL_TERMINATED = 'signal-terminated'
    SPAWN_FAILED = 'spawn-failed'

    def __init__(self, kind, command, code=None, cause=None):
        self.kind = kind
        self.command = command
        self.code = code
        self.cause = cause

    @property
    def ok(self):
        return self.kind == Outcome.SUCCESS

    @property
    def message(self):
        if self.kind == Outcome.SPAWN_FAILED:
            return f"error spawning {self.command}: {self.cause}"
        if self.kind == Outcome.NONZERO_EXIT:
            return f"{self.command} returned exit code {self.code}"
        if self.kind == Outcome.SIGNAL_TERMINATED:
            return f"{self.command} exited with failure"
        return f"{self.command} succeeded"

    def __repr__(self):
        return f"Outcome({self.kind!r}, {self.command!r}, code={self.code!r})"


def dispatch(plan, backend=None):
    """Runs plan to completion and classifies the result as an Outcome."""
    backend = backend or ProcessBackend()
    command = plan.display()
    try:
        if plan.subshell:
            returncode = backend.run_shell(plan.shell_line)
        else:
            returncode = backend.run(plan.argv)
    except (OSError, ValueError) as e:
        # ValueError: subprocess refuses arguments with embedded NUL bytes.
        return Outcome(Outcome.SPAWN_FAILED, plan.spawned(), cause=e)

    if returncode == 0:
        return Outcome(Outcome.SUCCESS, command, code=0)
    if returncode < 0:
        # Killed by signal -returncode; there is no exit code to report.
        return Outcome(Outcome.SIGNAL_TERMINATED, command)
    return Outcome(Outcome.NONZERO_EXIT, command, code=returncode)


def run(source, template, fence, continue_on_error=False, subshell=False,
        trace=False, codec=None, backend=None, stderr=None):
    """
    Runs template once for every item read from source and returns the
    exit status for the whole run.

    Without continue_on_error the first failing command ends the run and
    nothing more is read. With it, failures are reported and the run goes
    on. Read and decoding errors always end the run.
    """
    stderr = stderr or sys.stderr
    backend = backend or ProcessBackend()

    try:
        for item in Chunker(source, fence, codec):
            plan = substitute(template, item, subshell)
            if trace:
                print(f"exec: {plan.display()}", file=stderr)

            outcome = dispatch(plan, backend)
            if outcome.ok:
                continue
            print(f"{PROG}: {outcome.message}", file=stderr)
            if not continue_on_error:
                return EX_FAILURE
    except (SourceReadError, EncodingError) as e:
        print(f"{PROG}: {e}", file=stderr)
        return EX_FAILURE

    return EX_SUCCESS


# --- Command line ---

def usage(message=None):
    """Prints a usage message and exits."""
    if message:
        sys.stderr.write(f"{PROG}: {message}\n")
    sys.stderr.write(f"Usage: {PROG} [-cFst] [-d delimiter] <CMD> [ARGS...]\n")
    sys.exit(EX_USAGE)


def parse_args(argv: list) -> dict:
    """
    Reads yargs' own options off the front of argv. Option parsing stops at
    '--' or at the first word that isn't an option; that word is the command
    and everything after it goes to the command untouched.
    """
    opts = {
        'fence': None, 'fixed': False, 'subshell': False, 'cont': False,
        'trace': False, 'help': False, 'version': False, 'command': [],
    }
    args = list(argv)

    while args and args[0].startswith('-') and args[0] != '-':
        arg = args.pop(0)
        if re.match(r'^-[cFsthV]{2,}$', arg):
            # Bundled flags, e.g. -ct
            args[:0] = [f'-{flag}' for flag in arg[1:]]
            continue
        if arg == '--':
            break
        elif arg in ('-d', '--delim', '--delimiter'):
            if not args:
                usage(f"option requires an argument -- '{arg}'")
            opts['fence'] = args.pop(0)
        elif arg.startswith(('--delim=', '--delimiter=')):
            opts['fence'] = arg.split('=', 1)[1]
        elif arg.startswith('-d'):
            # Handles the value attached to the flag, e.g. -d,
            opts['fence'] = arg[2:]
        elif arg in ('-F', '--fixed', '--fixed-string'):
            opts['fixed'] = True
        elif arg in ('-s', '--sh', '--sub', '--shell', '--subshell'):
            opts['subshell'] = True
        elif arg in ('-c', '--cont', '--continue'):
            opts['cont'] = True
        elif arg in ('-t', '--trace'):
            opts['trace'] = True
        elif arg in ('-h', '--help'):
            opts['help'] = True
        elif arg in ('-V', '--version'):
            opts['version'] = True
        else:
            usage(f"invalid option -- '{arg}'")

    opts['command'] = args
    return opts


def main(argv=None):
    """Parses arguments and runs the command over standard input."""
    opts = parse_args(sys.argv[1:] if argv is None else argv)

    if opts['help']:
        print(HELP)
        sys.exit(EX_SUCCESS)
    if opts['version']:
        print(f"{PROG} {VERSION}")
        sys.exit(EX_SUCCESS)

    if not opts['command']:
        print("Must supply command to execute.", file=sys.stderr)
        sys.exit(EX_USAGE)

    # A bad pattern is reported before any input is read.
    try:
        fence = make_fence(opts['fence'], opts['fixed'])
    except InvalidPattern as e:
        print(f"{PROG}: {e}", file=sys.stderr)
        sys.exit(EX_USAGE)

    program, *args = opts['command']
    template = CommandTemplate(program, args)

    try:
        status = run(sys.stdin.buffer, template, fence,
                     continue_on_error=opts['cont'],
                     subshell=opts['subshell'],
                     trace=opts['trace'])
    except KeyboardInterrupt:
        status = EX_INTERRUPTED
    sys.exit(status)


if __name__ == "__main__":
    main()
