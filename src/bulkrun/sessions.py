"""Bounded pool of reusable worker sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from bulkrun.channels import Channel, ChannelFactory
from bulkrun.errors import ChannelCreationError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Session:
    """A concurrency slot, optionally holding a remote channel."""

    session_id: int
    in_use: bool = False
    target: str | None = None
    channel: Channel | None = None


class SessionPool:
    """Hands out at most ``max_concurrency`` sessions at a time.

    Local pools only account for slots. Remote pools keep one persistent
    channel per session and prefer an idle session already connected to
    the requested target.
    """

    def __init__(
        self,
        *,
        max_concurrency: int,
        channel_factory: ChannelFactory | None = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1.")
        self.max_concurrency = max_concurrency
        self.channel_factory = channel_factory
        self._sessions: dict[int, Session] = {}

    @property
    def remote(self) -> bool:
        return self.channel_factory is not None

    @property
    def in_use_count(self) -> int:
        return sum(1 for session in self._sessions.values() if session.in_use)

    def has_capacity(self) -> bool:
        return self.in_use_count < self.max_concurrency

    def get(self, session_id: int) -> Session | None:
        return self._sessions.get(session_id)

    def acquire(self, target: str | None = None) -> Session:
        """Return an idle session bound to ``target``, creating one if needed."""

        if not self.has_capacity():
            raise RuntimeError("Session pool is at capacity.")
        if not self.remote:
            session = self._idle_session() or self._new_session()
            session.in_use = True
            return session
        if target is None:
            raise ValueError("Remote sessions require a target.")

        session = self._idle_session(target=target)
        if session is None:
            session = (
                self._new_session()
                if len(self._sessions) < self.max_concurrency
                else self._idle_session()
            )
            if session is None:
                raise RuntimeError("No idle session available.")
            self._connect(session, target)
        session.in_use = True
        return session

    def release(self, session_id: int, *, discard: bool = False) -> None:
        """Return a session to the idle set, or drop it entirely."""

        session = self._sessions.get(session_id)
        if session is None:
            return
        if discard:
            self._close_channel(session)
            del self._sessions[session_id]
            return
        session.in_use = False

    def close_all(self) -> None:
        """Tear down every session and its channel."""

        for session in list(self._sessions.values()):
            self._close_channel(session)
        self._sessions.clear()

    def _idle_session(self, *, target: str | None = None) -> Session | None:
        for session_id in sorted(self._sessions):
            session = self._sessions[session_id]
            if session.in_use:
                continue
            if target is not None and (session.target != target or session.channel is None):
                continue
            return session
        return None

    def _new_session(self) -> Session:
        session_id = next(
            candidate
            for candidate in range(1, self.max_concurrency + 1)
            if candidate not in self._sessions
        )
        session = Session(session_id=session_id)
        self._sessions[session_id] = session
        return session

    def _connect(self, session: Session, target: str) -> None:
        self._close_channel(session)
        if self.channel_factory is None:
            raise RuntimeError("Local session pool cannot open channels.")
        channel = self.channel_factory(target, session.session_id)
        try:
            channel.open()
        except ChannelCreationError:
            del self._sessions[session.session_id]
            raise
        except OSError as error:
            del self._sessions[session.session_id]
            raise ChannelCreationError(
                f"Failed to open channel to {target}: {error}",
                target=target,
            ) from error
        session.channel = channel
        session.target = target
        logger.info("Session %d opened to %s", session.session_id, target)

    def _close_channel(self, session: Session) -> None:
        if session.channel is None:
            return
        try:
            session.channel.close()
        except OSError as error:
            logger.warning(
                "Closing session %d to %s failed: %s",
                session.session_id,
                session.target,
                error,
            )
        session.channel = None
        session.target = None
