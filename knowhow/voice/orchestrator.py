"""
Hands-free dialogue orchestration

Drives one spoken conversation between a field worker and the assistant:
- keeps recognition running, commits user turns after a silence window
- routes committed text through correction, command matching and chat
- speaks replies with recognition already running so the user can barge in
- runs the knowledge registration sub-dialogue (confirm / draft / dismiss)
- ends the conversation after a closing reply and completes the session

Everything runs on one asyncio loop. A single ``DialogueState`` value is the
authority for turn-taking; registration progress, the ending flag, the
analysis guard and the recognition hold are orthogonal fields next to it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .activity import ActivityMeter
from .assembler import UtteranceAssembler
from .config import DialogueConfig, EchoConfig, TimingConfig, VadConfig, VoiceConfig
from .echo import EchoClassifier
from .intents import Intent, IntentMatcher
from .markup import extract_knowledge_refs, to_speech_text
from .registration import (
    CHAT_FAILURE_MESSAGE,
    CLOSING_HINT,
    DISMISS_MESSAGE,
    EMPTY_REPLY_MESSAGE,
    GUIDANCE_MESSAGE,
    NO_RESULT_MESSAGE,
    RegistrationStatus,
    build_knowledge_payload,
    proposal_message,
    result_message,
    spoken_proposal_message,
    spoken_result_message,
)
from .services import (
    CaptureError,
    ConversationService,
    KnowledgeStore,
    SessionStore,
    SpeechCapture,
    SpeechSynthesizer,
)
from .session import (
    ChatReply,
    CommittedUtterance,
    ConversationSession,
    KnowledgeRef,
    PartialTranscript,
    RegistrationProposal,
    SessionStatus,
    Turn,
)
from .vad import BargeInDetector

LOGGER = logging.getLogger("knowhow-voice.dialogue")

MIC_DENIED_MESSAGE = "マイクへのアクセスが許可されていません"
MIC_UNAVAILABLE_MESSAGE = "マイクを開けませんでした"
CHAT_ERROR_NOTICE = "応答の取得に失敗しました"
REGISTRATION_ERROR_NOTICE = "ナレッジの登録に失敗しました"
SESSION_LOAD_ERROR_NOTICE = "セッションの読み込みに失敗しました"
SESSION_DELETE_ERROR_NOTICE = "削除に失敗しました"


def _related_knowledge(reply: ChatReply) -> list[dict[str, Any]]:
    """Service-listed references first, then inline ones, without duplicates."""
    refs: dict[int, KnowledgeRef] = {}
    for ref in (*reply.related, *extract_knowledge_refs(reply.text)):
        refs.setdefault(ref.id, ref)
    return [{"id": ref.id, "title": ref.title} for ref in refs.values()]


class DialogueState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    COMMITTING = "committing"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    ENDING = "ending"


class RegistrationPhase(str, Enum):
    NONE = "none"
    ANALYZING = "analyzing"
    CONFIRMING = "confirming"
    SAVING = "saving"
    DONE = "done"


@dataclass
class TurnTracker:
    intent: str = "chat"
    start: float = field(default_factory=time.monotonic)
    stage_start: float = field(default_factory=time.monotonic)
    current_stage: str | None = None
    stage_durations: dict[str, int] = field(default_factory=dict)

    def begin_stage(self, stage: str) -> None:
        now = time.monotonic()
        if self.current_stage:
            self.stage_durations[self.current_stage] = int((now - self.stage_start) * 1000)
        self.current_stage = stage
        self.stage_start = now

    def finalize(self, status: str) -> dict[str, object]:
        now = time.monotonic()
        if self.current_stage:
            self.stage_durations[self.current_stage] = int((now - self.stage_start) * 1000)
            self.current_stage = None
        return {
            "intent": self.intent,
            "status": status,
            "total_ms": int((now - self.start) * 1000),
            "stages": dict(self.stage_durations),
        }


class DialogueOrchestrator:
    """Turn-taking state machine for a hands-free knowledge conversation."""

    def __init__(
        self,
        *,
        capture: SpeechCapture,
        synthesizer: SpeechSynthesizer,
        conversation: ConversationService,
        sessions: SessionStore,
        knowledge: KnowledgeStore,
        dialogue: DialogueConfig | None = None,
        timing: TimingConfig | None = None,
        echo: EchoConfig | None = None,
        vad: VadConfig | None = None,
        meter: ActivityMeter | None = None,
        on_state_changed: Callable[[DialogueState], None] | None = None,
        on_turn: Callable[[Turn], None] | None = None,
        on_error: Callable[[str], None] | None = None,
        on_metrics: Callable[[dict[str, object]], None] | None = None,
        log_transcripts: bool = False,
    ) -> None:
        self.capture = capture
        self.synthesizer = synthesizer
        self.conversation = conversation
        self.sessions = sessions
        self.knowledge = knowledge
        self.dialogue = dialogue or DialogueConfig()
        self.timing = timing or TimingConfig()
        echo_config = echo or EchoConfig()
        vad_config = vad or VadConfig()
        self.log_transcripts = log_transcripts
        self._on_state_changed = on_state_changed
        self._on_turn = on_turn
        self._on_error = on_error
        self._on_metrics = on_metrics

        self.meter = meter or ActivityMeter(window=vad_config.meter_window)
        self.echo = EchoClassifier(
            threshold=echo_config.threshold,
            ngram_size=echo_config.ngram_size,
            min_chars=echo_config.min_chars,
        )
        self.assembler = UtteranceAssembler(
            self.echo,
            on_commit=self._on_utterance_committed,
            on_speech_start=self._on_user_speech,
            silence_seconds=self.timing.silence_seconds,
        )
        self.intents = IntentMatcher(soft_closing_max_chars=self.dialogue.soft_closing_max_chars)
        self.vad = BargeInDetector(
            self.meter,
            on_voice=self._on_barge_in,
            interval=vad_config.interval,
            calibration_samples=vad_config.calibration_samples,
            multiplier=vad_config.multiplier,
            margin=vad_config.margin,
            floor=vad_config.floor,
        )

        self._state = DialogueState.IDLE
        self._session = self._new_session()
        self._proposal: RegistrationProposal | None = None
        self._phase = RegistrationPhase.NONE
        self._ending = False
        self._analyzed = False
        self._analysis_task: asyncio.Task[Any] | None = None
        self._reset_conversation()
        self._turn_in_flight = False
        self._run_id = 0
        self._recognition_held = False
        self._speech_generation = 0
        self._tracker: TurnTracker | None = None
        self._restart_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @classmethod
    def from_config(cls, config: VoiceConfig, **kwargs: Any) -> DialogueOrchestrator:
        return cls(
            dialogue=config.dialogue,
            timing=config.timing,
            echo=config.echo,
            vad=config.vad,
            log_transcripts=config.log_transcripts,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Public state

    @property
    def state(self) -> DialogueState:
        return self._state

    @property
    def session(self) -> ConversationSession:
        return self._session

    @property
    def proposal(self) -> RegistrationProposal | None:
        return self._proposal

    @property
    def registration_phase(self) -> RegistrationPhase:
        return self._phase

    @property
    def interim_text(self) -> str:
        return self.assembler.pending_text

    @property
    def ending(self) -> bool:
        return self._ending

    @property
    def conversing(self) -> bool:
        return self._state is not DialogueState.IDLE

    @property
    def sending(self) -> bool:
        if self._turn_in_flight or self._recognition_held:
            return True
        return self._state in (DialogueState.COMMITTING, DialogueState.PROCESSING)

    # ------------------------------------------------------------------
    # Conversation lifecycle

    async def start(self) -> None:
        if self.conversing:
            return
        if self._session.status is SessionStatus.COMPLETED:
            self._reset_conversation()
        self._cancel_restart()
        self.assembler.reset()
        self.echo.clear()
        self.meter.reset()
        self._ending = False
        self._recognition_held = False
        try:
            await self.capture.open()
        except CaptureError as exc:
            LOGGER.error("[dialogue] Microphone unavailable: %s", exc)
            self._notify_error(MIC_DENIED_MESSAGE if exc.fatal else MIC_UNAVAILABLE_MESSAGE)
            return
        self._set_state(DialogueState.LISTENING)
        LOGGER.info("[dialogue] Conversation started (mode=%s)", self._session.mode)
        await self._ensure_listening()

    async def stop(self, end_session: bool = False) -> None:
        was_conversing = self.conversing
        await self._halt(end_session=end_session)
        if end_session or not was_conversing or not self.dialogue.analyze_on_stop:
            return
        if (
            len(self._session) >= self.dialogue.registration_min_turns
            and self._phase is RegistrationPhase.NONE
            and not self._analyzed
        ):
            self._analyzed = True
            self._analysis_task = self._spawn(
                self._analyze_conversation(self._session, self._session.transcript(), speak=False)
            )

    async def new_conversation(self) -> None:
        await self._halt()
        self._reset_conversation()
        LOGGER.info("[dialogue] New conversation")

    async def resume(self, session_id: str) -> bool:
        if session_id == self._session.session_id:
            return True
        await self._halt()
        try:
            turns = await self.sessions.get_session(session_id)
        except Exception:
            LOGGER.warning("[dialogue] Failed to load session %s", session_id, exc_info=True)
            self._notify_error(SESSION_LOAD_ERROR_NOTICE)
            return False
        self._reset_conversation(session_id=session_id, turns=turns)
        LOGGER.info("[dialogue] Resumed session %s with %d turns", session_id, len(self._session))
        return True

    async def delete_session(self, session_id: str) -> bool:
        try:
            await self.sessions.delete_session(session_id)
        except Exception:
            LOGGER.warning("[dialogue] Failed to delete session %s", session_id, exc_info=True)
            self._notify_error(SESSION_DELETE_ERROR_NOTICE)
            return False
        if session_id == self._session.session_id:
            await self._halt()
            self._reset_conversation()
        return True

    async def drain(self) -> None:
        """Wait for background work (commits, analysis, speech) to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Commit pipeline

    async def finalize_now(self) -> bool:
        utterance = self.assembler.flush()
        if utterance is None:
            return False
        return await self.commit(utterance)

    async def commit(self, utterance: CommittedUtterance) -> bool:
        """Process one committed user turn. Returns False when it was rejected."""
        if not self.conversing:
            LOGGER.debug("[dialogue] Ignoring commit while idle")
            return False
        if self.sending:
            LOGGER.info("[dialogue] Commit rejected; another turn is in flight")
            return False
        text = utterance.text.strip()
        if not text:
            self._schedule_restart(self.timing.restart_delay)
            return False
        self._turn_in_flight = True
        try:
            await self._run_turn(text, forced=utterance.forced)
        finally:
            self._turn_in_flight = False
        return True

    async def _run_turn(self, text: str, *, forced: bool) -> None:
        tracker = TurnTracker()
        tracker.begin_stage("committing")
        self._tracker = tracker
        run = self._run_id
        self._set_state(DialogueState.COMMITTING)
        self.assembler.reset()
        self._cancel_restart()
        self._interrupt_playback()
        await self.capture.stop()
        if self.log_transcripts:
            LOGGER.info("[dialogue] User: %s", text)
        else:
            LOGGER.debug("[dialogue] Committed %d chars (forced=%s)", len(text), forced)

        if self._phase is RegistrationPhase.CONFIRMING:
            reply = self.intents.confirmation(text)
            if reply is not None:
                tracker.intent = reply.value
                await self._handle_confirmation(reply)
                return

        raw_text: str | None = None
        try:
            corrected = await self.conversation.correct(text)
        except Exception as exc:
            LOGGER.debug("[dialogue] Speech correction failed: %s", exc)
        else:
            if corrected and corrected.strip() and corrected != text:
                raw_text, text = text, corrected.strip()
        if run != self._run_id:
            return

        if self.intents.match(text) is Intent.REGISTER:
            tracker.intent = Intent.REGISTER.value
            if self._proposal is not None and self._phase is RegistrationPhase.CONFIRMING:
                await self.confirm_registration("published")
                return
            prior_turns = len(self._session)
            self._append(Turn.user(text, raw_text))
            if prior_turns < self.dialogue.registration_min_turns:
                LOGGER.info("[dialogue] Registration requested with %d turns; sending guidance", prior_turns)
                self._append(Turn.assistant(GUIDANCE_MESSAGE))
                self._start_speaking(GUIDANCE_MESSAGE)
                return
            tracker.begin_stage("processing")
            await self._register_on_request(prior_turns, run)
            return

        await self._send_to_chat(text, raw_text, tracker, run)

    async def _send_to_chat(self, text: str, raw_text: str | None, tracker: TurnTracker, run: int) -> None:
        dropped_proposal = False
        if self._phase is RegistrationPhase.CONFIRMING:
            LOGGER.info("[dialogue] Conversation continued; dropping pending proposal")
            self._proposal = None
            self._phase = RegistrationPhase.NONE
            self._analyzed = False
            dropped_proposal = True

        session = self._session
        history = session.history()
        self._append(Turn.user(text, raw_text))
        self._ending = self.intents.is_closing(text)
        if self._ending:
            LOGGER.info("[dialogue] Closing phrase detected")
        self._set_state(DialogueState.PROCESSING)
        tracker.begin_stage("processing")
        session_id = await self._ensure_session()
        if run != self._run_id:
            return

        try:
            reply = await self.conversation.chat(
                text,
                history,
                session_id=session_id,
                hint=CLOSING_HINT if self._ending else None,
            )
        except Exception as exc:
            LOGGER.warning("[dialogue] Chat request failed: %s", exc)
            if not self._is_open(session):
                return
            self._append(Turn.assistant(CHAT_FAILURE_MESSAGE))
            self._notify_error(CHAT_ERROR_NOTICE)
            if run != self._run_id:
                return
            self._ending = False
            self._finish_turn("error")
            if self.conversing:
                self._set_state(DialogueState.LISTENING)
                self._schedule_restart(self.timing.failure_restart_delay)
            return

        if not self._is_open(session):
            LOGGER.info("[dialogue] Conversation ended before the reply arrived; dropping it")
            return
        content = reply.text or EMPTY_REPLY_MESSAGE
        related = _related_knowledge(reply)
        self._append(Turn.assistant(content, related_knowledge=related) if related else Turn.assistant(content))
        if self.log_transcripts:
            LOGGER.info("[dialogue] Assistant: %s", content)
        self._maybe_analyze(dropped_proposal)
        if run != self._run_id or not self.conversing:
            return
        self._start_speaking(to_speech_text(content))

    # ------------------------------------------------------------------
    # Registration sub-dialogue

    async def confirm_registration(self, status: RegistrationStatus = "published") -> dict[str, Any] | None:
        proposal = self._proposal
        if proposal is None or self._phase is RegistrationPhase.SAVING:
            return None
        session, run = self._session, self._run_id
        self._phase = RegistrationPhase.SAVING
        try:
            created = await self.knowledge.create_knowledge(build_knowledge_payload(proposal, status))
        except Exception:
            LOGGER.warning("[dialogue] Knowledge registration failed", exc_info=True)
            self._notify_error(REGISTRATION_ERROR_NOTICE)
            if session is self._session:
                self._phase = RegistrationPhase.CONFIRMING
            if run != self._run_id:
                return None
            self._finish_turn("error")
            if self.conversing:
                self._set_state(DialogueState.LISTENING)
                self._schedule_restart(self.timing.error_restart_delay)
            return None

        knowledge_id = created.get("id")
        LOGGER.info("[dialogue] Registered knowledge %s as %s", knowledge_id, status)
        self.knowledge.invalidate_cache()
        if not self._is_open(session):
            return created
        notice = Turn.assistant(
            result_message(knowledge_id, proposal.title, status),
            notice=True,
            knowledge_id=knowledge_id,
            status=status,
        )
        self._append(notice)
        self._persist([notice])
        self._proposal = None
        self._phase = RegistrationPhase.DONE
        if run == self._run_id:
            await self._close_with(spoken_result_message(proposal.title, status))
        return created

    async def dismiss_registration(self) -> None:
        if self._proposal is None and self._phase is not RegistrationPhase.CONFIRMING:
            return
        self._proposal = None
        self._phase = RegistrationPhase.DONE
        if self._session.status is SessionStatus.COMPLETED:
            return
        notice = Turn.assistant(DISMISS_MESSAGE, notice=True)
        self._append(notice)
        self._persist([notice])
        LOGGER.info("[dialogue] Registration dismissed")
        await self._close_with(DISMISS_MESSAGE)

    async def _handle_confirmation(self, reply: Intent) -> None:
        if reply is Intent.CONFIRM_DRAFT:
            await self.confirm_registration("draft")
        elif reply is Intent.CONFIRM_PUBLISH:
            await self.confirm_registration("published")
        else:
            await self.dismiss_registration()

    async def _close_with(self, text: str) -> None:
        """Speak a final remark with recognition paused, then end the conversation."""
        run = self._run_id
        self._interrupt_playback()
        self._recognition_held = True
        self._cancel_restart()
        self.assembler.reset()
        await self.capture.stop()
        if run != self._run_id:
            return
        self._ending = True
        self._start_speaking(text, listen=False)

    async def _register_on_request(self, prior_turns: int, run: int) -> None:
        self._set_state(DialogueState.PROCESSING)
        pending = self._analysis_task
        if pending is not None and not pending.done():
            LOGGER.info("[dialogue] Registration requested; waiting for the running analysis")
            await asyncio.wait({pending})
            if run != self._run_id:
                return
            if self._proposal is not None and self._phase is RegistrationPhase.CONFIRMING:
                self._start_speaking(spoken_proposal_message(self._proposal))
                return
        self._analyzed = True
        await self._analyze_conversation(self._session, self._session.transcript()[:prior_turns], speak=True)

    async def _analyze_conversation(
        self, session: ConversationSession, turns: list[dict[str, str]], *, speak: bool
    ) -> None:
        if not self._is_open(session):
            return
        run = self._run_id
        if speak:
            self._set_state(DialogueState.PROCESSING)
        self._phase = RegistrationPhase.ANALYZING
        try:
            result = await self.conversation.analyze(turns)
        except Exception:
            LOGGER.warning("[dialogue] Conversation analysis failed", exc_info=True)
            if session is self._session:
                self._phase = RegistrationPhase.DONE
            if speak and run == self._run_id:
                self._finish_turn("error")
                if self.conversing:
                    self._set_state(DialogueState.LISTENING)
                    self._schedule_restart(self.timing.error_restart_delay)
            return

        if not self._is_open(session):
            LOGGER.info("[dialogue] Conversation ended before analysis finished; dropping result")
            return
        if result.save_worthy and result.proposal is not None:
            self._proposal = result.proposal
            self._phase = RegistrationPhase.CONFIRMING
            notice = Turn.assistant(proposal_message(result.proposal), notice=True, proposal=True)
            spoken = spoken_proposal_message(result.proposal)
        else:
            self._phase = RegistrationPhase.DONE
            notice = Turn.assistant(NO_RESULT_MESSAGE, notice=True)
            spoken = NO_RESULT_MESSAGE
        self._append(notice)
        self._persist([notice])
        if not speak or run != self._run_id:
            return
        if self.conversing:
            self._start_speaking(spoken)
        else:
            self._finish_turn("ok")

    def _maybe_analyze(self, dropped_proposal: bool) -> None:
        if self._analyzed or len(self._session) < self.dialogue.analysis_min_turns:
            return
        if self._phase is not RegistrationPhase.NONE and not dropped_proposal:
            return
        self._analyzed = True
        self._analysis_task = self._spawn(self._background_analysis(self._session, self._session.transcript()))

    async def _background_analysis(self, session: ConversationSession, turns: list[dict[str, str]]) -> None:
        try:
            result = await self.conversation.analyze(turns)
        except Exception as exc:
            LOGGER.warning("[dialogue] Background analysis failed: %s", exc)
            if session is self._session:
                self._analyzed = False
            return
        if not self._is_open(session):
            return
        if not result.save_worthy or result.proposal is None:
            LOGGER.debug("[dialogue] Background analysis found nothing to register")
            self._analyzed = False
            return
        if self._phase is not RegistrationPhase.NONE:
            return
        LOGGER.info("[dialogue] Proposing knowledge registration: %s", result.proposal.title)
        self._proposal = result.proposal
        self._phase = RegistrationPhase.CONFIRMING
        notice = Turn.assistant(proposal_message(result.proposal), notice=True, proposal=True)
        self._append(notice)
        self._persist([notice])

    # ------------------------------------------------------------------
    # Speaking and barge-in

    def _start_speaking(self, text: str, *, listen: bool = True) -> None:
        self._speech_generation += 1
        generation = self._speech_generation
        self._set_state(DialogueState.ENDING if self._ending else DialogueState.SPEAKING)
        if self._tracker is not None:
            self._tracker.begin_stage("speaking")
        self.echo.set_spoken(text)
        if listen:
            self.meter.reset()
            self.vad.start()
        self._spawn(self._speak(text, generation, listen))

    async def _speak(self, text: str, generation: int, listen: bool) -> None:
        if listen:
            await self._ensure_listening()
        if generation != self._speech_generation:
            return
        try:
            await self.synthesizer.speak(text)
        except Exception as exc:
            LOGGER.warning("[dialogue] Speech synthesis failed: %s", exc)
        if generation != self._speech_generation:
            return
        await self._on_speech_finished()

    async def _on_speech_finished(self) -> None:
        self.echo.clear()
        self.vad.stop()
        self._finish_turn("ok")
        if self._ending:
            LOGGER.info("[dialogue] Closing reply finished; ending conversation")
            await self._halt(end_session=True)
            return
        if not self.conversing:
            return
        self._set_state(DialogueState.LISTENING)
        await self._ensure_listening()

    def _interrupt_playback(self, *, keep_echo: bool = False) -> None:
        self._speech_generation += 1
        self.vad.stop()
        if not keep_echo:
            self.echo.clear()
        self._spawn(self.synthesizer.stop())

    def _on_user_speech(self, text: str) -> None:
        if self._state in (DialogueState.SPEAKING, DialogueState.ENDING):
            LOGGER.info("[dialogue] User started speaking; interrupting playback")
            self._ending = False
            self._interrupt_playback()
            self._finish_turn("interrupted")
            self._set_state(DialogueState.LISTENING)
        else:
            self.echo.clear()

    def _on_barge_in(self, level: float, threshold: float) -> None:
        if self._state not in (DialogueState.SPEAKING, DialogueState.ENDING):
            return
        LOGGER.info("[dialogue] Barge-in (level %.1f > %.1f); stopping playback", level, threshold)
        self._interrupt_playback(keep_echo=True)
        self.echo.clear_after(self.timing.echo_tail_seconds)
        if self._ending:
            LOGGER.info("[dialogue] User spoke again; conversation continues")
            self._ending = False
        self._finish_turn("interrupted")
        self._set_state(DialogueState.LISTENING)

    # ------------------------------------------------------------------
    # Recognition

    def _on_transcript(self, event: PartialTranscript) -> None:
        if not self.conversing or self.sending:
            return
        self.assembler.feed(event)

    def _on_utterance_committed(self, utterance: CommittedUtterance) -> None:
        if not self.conversing:
            return
        self._spawn(self.commit(utterance))

    def _on_capture_error(self, error: CaptureError) -> None:
        self.assembler.reset()
        if not self.conversing:
            return
        if error.fatal:
            LOGGER.error("[dialogue] Speech capture failed: %s", error)
            self._notify_error(MIC_DENIED_MESSAGE)
            self._spawn(self.stop())
        elif error.code == "aborted":
            LOGGER.debug("[dialogue] Recognition aborted")
        elif error.code == "no-speech":
            self._schedule_restart(self.timing.restart_delay)
        else:
            LOGGER.info("[dialogue] Recoverable capture error: %s", error.code)
            self._schedule_restart(self.timing.error_restart_delay)

    def _on_capture_end(self) -> None:
        if self.conversing and not self.sending:
            self._schedule_restart(self.timing.restart_delay)

    async def _ensure_listening(self) -> None:
        if not self.conversing or self._recognition_held or self.capture.active:
            return
        try:
            await self.capture.start(self._on_transcript, self._on_capture_error, self._on_capture_end)
        except CaptureError as exc:
            self._on_capture_error(exc)

    def _schedule_restart(self, delay: float) -> None:
        self._cancel_restart()
        loop = asyncio.get_running_loop()
        self._restart_handle = loop.call_later(delay, self._restart_fired)

    def _restart_fired(self) -> None:
        self._restart_handle = None
        if self.conversing and not self.sending:
            self._spawn(self._ensure_listening())

    def _cancel_restart(self) -> None:
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None

    # ------------------------------------------------------------------
    # Session bookkeeping

    def _new_session(self, session_id: str | None = None) -> ConversationSession:
        return ConversationSession(mode=self.dialogue.mode, session_id=session_id)

    def _reset_conversation(self, *, session_id: str | None = None, turns: list[Turn] | None = None) -> None:
        self._session = self._new_session(session_id)
        if turns:
            self._session.extend(turns)
        elif self.dialogue.greeting:
            self._session.append(Turn.assistant(self.dialogue.greeting))
        self._proposal = None
        self._phase = RegistrationPhase.NONE
        self._analyzed = False
        self._ending = False

    async def _ensure_session(self) -> str | None:
        session = self._session
        if session.session_id:
            return session.session_id
        try:
            session_id = await self.sessions.create_session(session.mode)
        except Exception as exc:
            LOGGER.warning("[dialogue] Failed to create voice session: %s", exc)
            return None
        session.session_id = session_id
        LOGGER.debug("[dialogue] Created voice session %s", session_id)
        return session_id

    def _is_open(self, session: ConversationSession) -> bool:
        return session is self._session and session.status is not SessionStatus.COMPLETED

    def _persist(self, turns: list[Turn]) -> None:
        session_id = self._session.session_id
        if not session_id:
            return
        self._spawn(self._guarded(self.sessions.append_messages(session_id, turns), "save messages"))

    async def _halt(self, *, end_session: bool = False) -> None:
        self._run_id += 1
        self._set_state(DialogueState.IDLE)
        self._cancel_restart()
        self.assembler.reset()
        self._interrupt_playback()
        self._recognition_held = False
        self._ending = False
        self._finish_turn("stopped")
        await self.capture.stop()
        await self.capture.close()
        self.meter.reset()
        if end_session and self._session.status is not SessionStatus.COMPLETED:
            self._session.complete()
            session_id = self._session.session_id
            LOGGER.info("[dialogue] Session %s completed", session_id or "(unsaved)")
            if session_id:
                self._spawn(self._guarded(self.sessions.complete_session(session_id), "complete session"))

    async def _guarded(self, awaitable: Awaitable[Any], action: str) -> None:
        try:
            await awaitable
        except Exception as exc:
            LOGGER.error("[dialogue] Failed to %s: %s", action, exc)

    # ------------------------------------------------------------------
    # Plumbing

    def _append(self, turn: Turn) -> Turn:
        self._session.append(turn)
        if self._on_turn:
            self._on_turn(turn)
        return turn

    def _set_state(self, state: DialogueState) -> None:
        if state is self._state:
            return
        LOGGER.debug("[dialogue] %s -> %s", self._state.value, state.value)
        self._state = state
        if self._on_state_changed:
            self._on_state_changed(state)

    def _notify_error(self, message: str) -> None:
        if self._on_error:
            self._on_error(message)

    def _finish_turn(self, status: str) -> None:
        tracker = self._tracker
        self._tracker = None
        if tracker is None:
            return
        metrics = tracker.finalize(status)
        LOGGER.info(
            "[dialogue] Turn %s (%s): total=%sms stages=%s",
            metrics["intent"],
            status,
            metrics["total_ms"],
            metrics["stages"],
        )
        if self._on_metrics:
            self._on_metrics(metrics)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        with contextlib.suppress(asyncio.CancelledError):
            exc = task.exception()
            if exc is not None:
                LOGGER.error("[dialogue] Background task failed", exc_info=exc)
