"""Running external programs as connected pipelines.

A ProcessChain owns every process it starts. Each process gets its own
temporary stderr file so a chatty program can never block on a full
pipe, and the parent drops its copies of intermediate pipe ends as soon
as the consumer has been started so that a dying consumer delivers
SIGPIPE upstream.

Delta tools read their source (handed over as /dev/fd/N) only as far as
they need it, so the process feeding a source may legitimately be killed
by SIGPIPE. That is accepted when the reader finished successfully, and
for anything upstream of a stage accepted that way; every other
non-zero status is a failure.
"""

import logging
import signal
import subprocess
import tempfile
from dataclasses import dataclass, field
from typing import IO

logger = logging.getLogger(__name__)

# Killed by SIGPIPE directly, or a shell reporting a child killed by it
BROKEN_PIPE_STATUSES = (-signal.SIGPIPE, 128 + signal.SIGPIPE)


@dataclass
class StageStatus:
    """Exit status of one process in a pipeline.

    Attributes:
        name: Stage name used in messages
        argv: Command line the stage ran
        returncode: Exit status (negative when killed by a signal)
        stderr: Everything the process wrote to standard error
        closed_early: Killed by SIGPIPE after its reader had all it needed
    """

    name: str
    argv: list[str]
    returncode: int
    stderr: str = ""
    closed_early: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 or self.closed_early


@dataclass
class _Stage:
    name: str
    argv: list[str]
    process: subprocess.Popen
    stderr: IO[bytes]
    # Index of the stage reading this one's output, and whether it reads
    # it as a /dev/fd source rather than on standard input
    reader: int | None = None
    read_as_source: bool = False


@dataclass
class ProcessChain:
    """A group of processes wired together by pipes."""

    stages: list[_Stage] = field(default_factory=list)

    def spawn(
        self,
        name: str,
        argv: list[str],
        stdin=None,
        stdout=subprocess.PIPE,
        pass_fds: tuple[int, ...] = (),
    ) -> subprocess.Popen:
        """Start one process and register it with the chain.

        A stage whose stdout is given as ``stdin``, or whose stdout file
        descriptor is in ``pass_fds``, is recorded as feeding the new one.

        Raises:
            OSError: If the program cannot be started
        """
        logger.debug("Starting %s: %s", name, " ".join(argv))
        err = tempfile.TemporaryFile()
        try:
            process = subprocess.Popen(
                argv,
                stdin=stdin,
                stdout=stdout,
                stderr=err,
                pass_fds=pass_fds,
            )
        except OSError:
            err.close()
            raise

        index = len(self.stages)
        for stage in self.stages:
            out = stage.process.stdout
            if out is None or out.closed:
                continue
            if stdin is not None and out is stdin:
                stage.reader, stage.read_as_source = index, False
            elif out.fileno() in pass_fds:
                stage.reader, stage.read_as_source = index, True

        self.stages.append(_Stage(name, list(argv), process, err))
        return process

    @staticmethod
    def release(stream) -> None:
        """Close the parent's copy of a pipe end handed to a child."""
        if stream is not None:
            try:
                stream.close()
            except OSError as e:
                logger.warning("Error closing pipe: %s", e)

    def wait(self) -> list[StageStatus]:
        """Wait for every process and return their statuses in start order."""
        statuses = []
        for stage in self.stages:
            returncode = stage.process.wait()
            stage.stderr.seek(0)
            stderr = stage.stderr.read().decode("utf-8", errors="replace").strip()
            stage.stderr.close()
            statuses.append(StageStatus(stage.name, stage.argv, returncode, stderr))

        # Readers always start after their writers, so walk back from the end
        for stage, status in reversed(list(zip(self.stages, statuses))):
            if status.returncode not in BROKEN_PIPE_STATUSES or stage.reader is None:
                continue
            reader = statuses[stage.reader]
            if reader.closed_early or (stage.read_as_source and reader.returncode == 0):
                status.closed_early = True
                logger.debug("%s stopped after its reader closed the pipe", status.name)

        self.stages.clear()
        return statuses

    def abort(self) -> None:
        """Close pipes and reap processes after a failure to build the chain."""
        for stage in self.stages:
            self.release(stage.process.stdout)
            self.release(stage.process.stdin)
        self.wait()


def failed_stages(statuses: list[StageStatus]) -> list[StageStatus]:
    return [s for s in statuses if not s.ok]


def describe_failures(statuses: list[StageStatus]) -> str:
    """One line naming every failed stage and its exit status."""
    return ", ".join(f"{s.name} exited {s.returncode}" for s in failed_stages(statuses))


def log_stage_errors(statuses: list[StageStatus]) -> None:
    """Log stderr from failed processes."""
    for status in failed_stages(statuses):
        if status.stderr:
            logger.error("%s stderr: %s", status.name, status.stderr)
