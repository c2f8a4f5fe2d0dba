"""Microphone capture and local playback subprocesses for the voice engine.

Capture shells out to an ALSA recorder and reads fixed-size PCM chunks from its
stdout. Playback feeds a player's stdin: raw PCM from Wyoming TTS goes to
``pw-play``/``paplay``/``aplay``, encoded audio from the Knowhow speech API goes
to ``mpg123``/``ffplay``. Either player can be killed mid-utterance for barge-in.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
from asyncio.subprocess import Process
from collections.abc import Callable

LOGGER = logging.getLogger("knowhow-voice.audio")

PCM_PLAYERS = ("pw-play", "paplay", "aplay")
ENCODED_PLAYERS = ("mpg123", "ffplay")

_ALSA_FORMATS = {1: "U8", 2: "S16_LE", 3: "S24_LE", 4: "S32_LE"}
_PULSE_FORMATS = {1: "s8", 2: "s16le", 3: "s24le", 4: "s32le"}
_PIPEWIRE_FORMATS = {1: "s8", 2: "s16", 4: "s32"}


class MicrophoneStream:
    """PCM chunks read from a recorder subprocess (``arecord`` by default)."""

    def __init__(self, command: list[str], bytes_per_chunk: int, logger: logging.Logger | None = None) -> None:
        self.command = command
        self.bytes_per_chunk = bytes_per_chunk
        self._proc: Process | None = None
        self._logger = logger or LOGGER

    @property
    def running(self) -> bool:
        return self._proc is not None

    async def start(self) -> None:
        if self._proc is not None:
            return
        self._logger.debug("[audio] Opening microphone: %s", " ".join(self.command))
        self._proc = await asyncio.create_subprocess_exec(
            *self.command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    async def read_chunk(self) -> bytes:
        proc = self._proc
        if proc is None or proc.stdout is None:
            raise RuntimeError("Microphone is not open")
        try:
            return await proc.stdout.readexactly(self.bytes_per_chunk)
        except asyncio.IncompleteReadError as exc:
            detail = await _read_stderr(proc)
            raise RuntimeError(f"Microphone closed{f' ({detail})' if detail else ''}") from exc

    async def stop(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None:
            return
        self._logger.debug("[audio] Closing microphone")
        await _terminate(proc, kill=False)


class PlaybackProcess:
    """A player subprocess fed through stdin that can be aborted at any time."""

    def __init__(self, binary: str | None, candidates: tuple[str, ...], logger: logging.Logger | None = None) -> None:
        self.binary = binary or "auto"
        self.candidates = candidates
        self._logger = logger or LOGGER
        self._proc: Process | None = None
        self._interrupted = False

    @property
    def active(self) -> bool:
        return self._proc is not None

    @property
    def interrupted(self) -> bool:
        return self._interrupted

    def resolve_player(self) -> str:
        if self.binary != "auto":
            if _is_executable(self.binary):
                return self.binary
            self._logger.warning("[audio] Player '%s' not found; auto-detecting", self.binary)
        for candidate in self.candidates:
            if _is_executable(candidate):
                return candidate
        return self.candidates[-1]

    async def _spawn(self, cmd: list[str]) -> None:
        self._interrupted = False
        self._logger.debug("[audio] Starting playback: %s", " ".join(cmd))
        self._proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )

    async def write(self, data: bytes) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None:
            raise RuntimeError("Playback is not active")
        try:
            proc.stdin.write(data)
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            detail = await _read_stderr(proc, timeout=0.05)
            await self.abort()
            raise RuntimeError(f"Player exited early{f' ({detail})' if detail else ''}") from exc

    async def finish(self) -> None:
        """Close stdin and wait until the player has played everything."""
        proc = self._proc
        if proc is None:
            return
        if proc.stdin is not None:
            proc.stdin.close()
            with contextlib.suppress(BrokenPipeError, ConnectionResetError):
                await proc.stdin.wait_closed()
        await proc.wait()
        if self._proc is proc:
            self._proc = None

    async def abort(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None:
            return
        self._interrupted = True
        self._logger.debug("[audio] Playback aborted")
        await _terminate(proc, kill=True)


class PcmPlayer(PlaybackProcess):
    """Raw PCM playback for streamed Wyoming TTS audio."""

    def __init__(self, binary: str | None = None, logger: logging.Logger | None = None) -> None:
        super().__init__(binary or os.environ.get("KNOWHOW_AUDIO_PLAYER"), PCM_PLAYERS, logger)

    async def start(self, rate: int, width: int, channels: int) -> None:
        await self.abort()
        await self._spawn(pcm_command(self.resolve_player(), rate, width, channels))


class EncodedPlayer(PlaybackProcess):
    """Compressed (mp3) playback for audio returned by the Knowhow speech API."""

    def __init__(self, binary: str | None = None, logger: logging.Logger | None = None) -> None:
        super().__init__(binary or os.environ.get("KNOWHOW_ENCODED_PLAYER"), ENCODED_PLAYERS, logger)

    async def play(self, audio: bytes) -> bool:
        """Play ``audio`` to the end. Returns False when it was aborted."""
        await self.abort()
        await self._spawn(encoded_command(self.resolve_player()))
        try:
            await self.write(audio)
            await self.finish()
        except RuntimeError:
            if self._interrupted:
                return False
            raise
        return not self._interrupted


def _aplay(rate: int, width: int, channels: int) -> list[str]:
    fmt = _ALSA_FORMATS.get(width, "S16_LE")
    return ["aplay", "-q", "-t", "raw", "-f", fmt, "-c", str(channels), "-r", str(rate), "-"]


def _paplay(rate: int, width: int, channels: int) -> list[str]:
    fmt = _PULSE_FORMATS.get(width, "s16le")
    return ["paplay", "--raw", "--rate", str(rate), "--channels", str(channels), f"--format={fmt}", "-"]


def _pw_play(rate: int, width: int, channels: int) -> list[str]:
    fmt = _PIPEWIRE_FORMATS.get(width)
    if fmt is None:
        return _aplay(rate, width, channels)
    return ["pw-play", "--raw", "--rate", str(rate), "--channels", str(channels), "--format", fmt, "-"]


_PCM_COMMANDS: dict[str, Callable[[int, int, int], list[str]]] = {
    "pw-play": _pw_play,
    "paplay": _paplay,
    "aplay": _aplay,
}


def pcm_command(player: str, rate: int, width: int, channels: int) -> list[str]:
    """Player command line for raw PCM; unknown players get aplay arguments."""
    builder = _PCM_COMMANDS.get(os.path.basename(player), _aplay)
    cmd = builder(rate, width, channels)
    if os.path.isabs(player) and os.path.basename(player) == cmd[0]:
        cmd[0] = player
    return cmd


def encoded_command(player: str) -> list[str]:
    if os.path.basename(player) == "ffplay":
        return [player, "-nodisp", "-autoexit", "-loglevel", "quiet", "-"]
    return [player, "-q", "-"]


def _is_executable(binary: str) -> bool:
    if os.path.isabs(binary):
        return os.access(binary, os.X_OK)
    return shutil.which(binary) is not None


async def _read_stderr(proc: Process, timeout: float = 1.0) -> str:
    if proc.stderr is None:
        return ""
    try:
        data = await asyncio.wait_for(proc.stderr.read(), timeout=timeout)
    except (asyncio.TimeoutError, OSError, ValueError, RuntimeError):
        return ""
    return data.decode("utf-8", errors="ignore").strip()


async def _terminate(proc: Process, *, kill: bool) -> None:
    if proc.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            if kill:
                proc.kill()
            else:
                proc.terminate()
    with contextlib.suppress(asyncio.TimeoutError):
        await asyncio.wait_for(proc.wait(), timeout=2)
