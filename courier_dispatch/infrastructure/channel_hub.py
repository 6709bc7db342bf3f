import logging
from typing import Any, Iterable, Protocol

from courier_dispatch.core.models import Envelope, EventTypeEnum, Role

logger = logging.getLogger(__name__)

SESSION_TAKEN_OVER = "Account logged in elsewhere"


class ChannelSession(Protocol):
    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


class ChannelHub:
    """Registry of identified push-channel sessions, grouped by role.

    Couriers and shops hold one session per user; a second IDENTIFY from the
    same user logs the older session out. Admin sessions are kept as a set.
    """

    def __init__(self):
        self._couriers: dict[str, ChannelSession] = {}
        self._shops: dict[str, ChannelSession] = {}
        self._admins: set[ChannelSession] = set()
        self._identities: dict[ChannelSession, tuple[Role, str]] = {}
        self._channels: dict[ChannelSession, str] = {}

    def identity_of(self, session: ChannelSession) -> tuple[Role, str] | None:
        return self._identities.get(session)

    def channel_of(self, session: ChannelSession) -> str | None:
        return self._channels.get(session)

    def subscribe(self, session: ChannelSession, channel: str) -> None:
        self._channels[session] = channel
        logger.info(f"Session subscribed to channel {channel}")

    def counts(self) -> dict[str, int]:
        return {
            Role.ADMIN: len(self._admins),
            Role.COURIER: len(self._couriers),
            Role.SHOP: len(self._shops),
        }

    def _keyed(self, role: Role) -> dict[str, ChannelSession]:
        return self._couriers if role == Role.COURIER else self._shops

    async def identify(
        self, session: ChannelSession, user_id: str, role: str
    ) -> Role | None:
        parsed = Role.parse(role)
        if parsed is None:
            logger.warning(f"Unknown role {role!r} from user {user_id}, not registered")
            return None

        # re-identify on the same socket under a new identity
        if session in self._identities:
            self._forget(session)

        if parsed == Role.ADMIN:
            self._admins.add(session)
        else:
            sessions = self._keyed(parsed)
            previous = sessions.get(user_id)
            sessions[user_id] = session
            if previous is not None and previous is not session:
                self._identities.pop(previous, None)
                await self._force_logout(previous, user_id)

        self._identities[session] = (parsed, user_id)
        logger.info(f"{parsed} {user_id} identified, sessions: {self.counts()}")

        await self._send(
            session,
            Envelope(
                type=EventTypeEnum.IDENTIFIED,
                payload={"role": parsed.value, "userId": user_id},
            ),
        )
        return parsed

    async def _force_logout(self, session: ChannelSession, user_id: str) -> None:
        logger.info(f"Session of {user_id} taken over, forcing logout")
        await self._send(
            session,
            Envelope(
                type=EventTypeEnum.FORCE_LOGOUT,
                payload={"reason": SESSION_TAKEN_OVER},
            ),
            drop_on_failure=False,
        )
        try:
            await session.close(code=1000, reason=SESSION_TAKEN_OVER)
        except Exception as e:
            logger.debug(f"Closing replaced session of {user_id} failed: {e}")

    def unregister(self, session: ChannelSession) -> None:
        self._channels.pop(session, None)
        identity = self._forget(session)
        if identity is not None:
            role, user_id = identity
            logger.info(f"{role} {user_id} disconnected")

    def _forget(self, session: ChannelSession) -> tuple[Role, str] | None:
        identity = self._identities.pop(session, None)
        if identity is None:
            return None

        role, user_id = identity
        if role == Role.ADMIN:
            self._admins.discard(session)
        else:
            sessions = self._keyed(role)
            # a takeover may already have replaced this entry
            if sessions.get(user_id) is session:
                del sessions[user_id]
        return identity

    def _sessions_for(self, roles: Iterable[Role]) -> list[ChannelSession]:
        sessions: list[ChannelSession] = []
        for role in roles:
            if role == Role.ADMIN:
                sessions.extend(self._admins)
            else:
                sessions.extend(self._keyed(role).values())
        return sessions

    async def fan_out(self, envelope: Envelope, roles: Iterable[Role]) -> int:
        delivered = 0
        for session in self._sessions_for(roles):
            if await self._send(session, envelope):
                delivered += 1
        return delivered

    async def send_to_user(self, user_id: str, envelope: Envelope) -> bool:
        targets = [
            session
            for session, (_, identity) in self._identities.items()
            if identity == user_id
        ]
        delivered = False
        for session in targets:
            delivered = await self._send(session, envelope) or delivered
        return delivered

    async def send_to_shop(self, shop_id: str, envelope: Envelope) -> bool:
        session = self._shops.get(shop_id)
        if session is None:
            return False
        return await self._send(session, envelope)

    async def _send(
        self,
        session: ChannelSession,
        envelope: Envelope,
        drop_on_failure: bool = True,
    ) -> bool:
        try:
            await session.send_json(envelope.model_dump(mode="json"))
            return True
        except Exception as e:
            logger.warning(f"Dropping session after failed send of {envelope.type}: {e}")
            if drop_on_failure:
                self.unregister(session)
            return False
