"""Shared sources and backends for the yargs tests."""

import errno
import io

import pytest

import yargs


class TrickleSource(io.RawIOBase):
    """Hands out its data at most `step` bytes per read."""

    def __init__(self, data, step=1):
        self.data = data
        self.step = step
        self.pos = 0
        self.reads = 0

    def readable(self):
        return True

    def readinto(self, buffer):
        self.reads += 1
        chunk = self.data[self.pos:self.pos + min(self.step, len(buffer))]
        buffer[:len(chunk)] = chunk
        self.pos += len(chunk)
        return len(chunk)


class FlakySource(TrickleSource):
    """Interleaves would-block and interrupted conditions with real reads."""

    def __init__(self, data, step=3):
        super().__init__(data, step)
        self.hiccups = 0

    def readinto(self, buffer):
        self.hiccups += 1
        if self.hiccups % 4 == 1:
            raise BlockingIOError(errno.EAGAIN, "would block")
        if self.hiccups % 4 == 2:
            raise InterruptedError(errno.EINTR, "interrupted")
        if self.hiccups % 4 == 3:
            # Non-blocking raw streams return None when nothing is ready.
            return None
        return super().readinto(buffer)


class FailingSource(TrickleSource):
    """Serves its data, then fails every read after that."""

    def readinto(self, buffer):
        if self.pos >= len(self.data):
            self.reads += 1
            raise OSError(errno.EIO, "Input/output error")
        return super().readinto(buffer)


class FakeBackend:
    """
    Records what would have been run. `results` maps the call number
    (starting at 1) to a return code or an exception to raise.
    """

    def __init__(self, results=None, source=None):
        self.results = results or {}
        self.source = source
        self.calls = []
        self.positions = []

    def _result(self, call):
        self.calls.append(call)
        if self.source is not None:
            self.positions.append(self.source.pos)
        result = self.results.get(len(self.calls), 0)
        if isinstance(result, BaseException):
            raise result
        return result

    def run(self, argv):
        return self._result(('argv', list(argv)))

    def run_shell(self, line):
        return self._result(('shell', line))


@pytest.fixture
def raw_codec():
    return yargs.ItemCodec(text_required=False)


@pytest.fixture
def newline_fence():
    return yargs.RegexFence(yargs.DEFAULT_FENCE)
