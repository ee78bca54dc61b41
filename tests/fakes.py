import asyncio
import gzip
import io
import tarfile
from datetime import datetime, timedelta, timezone

from image_rewriter.runner import CommandNotFound, CommandResult


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeRunner:
    """
    Stands in for run_command. Responses are looked up by the argv prefix;
    a response can be a CommandResult, an exception instance, or a callable.
    """

    def __init__(self, responses=None, delay=0.0):
        self.responses = responses or {}
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0

    def calls_for(self, *prefix):
        return [call for call in self.calls if tuple(call[:len(prefix)]) == prefix]

    async def __call__(self, argv, timeout):
        argv = list(argv)
        self.calls.append(argv)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            for length in range(len(argv), 0, -1):
                response = self.responses.get(tuple(argv[:length]))
                if response is None:
                    continue
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    return response(argv)
                return response
            raise CommandNotFound(argv[0])
        finally:
            self.active -= 1


def ok(stdout="", stderr=""):
    return CommandResult(returncode=0, stdout=stdout, stderr=stderr)


def failed(stderr="", returncode=1):
    return CommandResult(returncode=returncode, stdout="", stderr=stderr)


def tar_gz(members):
    """gzip'd tar holding the given name -> bytes members."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return gzip.compress(buffer.getvalue())


def apkindex_archive(index):
    # signature segment followed by the index segment, as published
    signature = tar_gz({".SIGN.RSA.wolfi-signing.rsa.pub": b"signature"})
    body = tar_gz({"DESCRIPTION": b"wolfi", "APKINDEX": index.encode("utf-8")})
    return signature + body
