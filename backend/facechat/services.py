"""Service container.

Everything stateful is constructed once in ``build_services`` and attached to
``app.state.services`` by the application lifespan. Collaborators are passed
in explicitly; nothing reaches for module-level singletons.
"""
import logging
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from .auth.faces import FaceMatcher, build_face_matcher
from .auth.service import PasswordHasher, TokenService
from .auth.users import UserDirectory
from .chat.broadcaster import RoomBroadcaster
from .chat.pipeline import MessagePipeline
from .chat.presence import TypingTracker
from .chat.registry import ConnectionRegistry
from .config import AppConfig
from .database import Clock, Database, utcnow
from .mail import Mailer, build_mailer
from .rooms.invitations import InvitationService
from .rooms.store import RoomStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: AppConfig
    database: Database
    users: UserDirectory
    store: RoomStore
    invitations: InvitationService
    tokens: TokenService
    passwords: PasswordHasher
    faces: FaceMatcher
    mailer: Mailer
    broadcaster: RoomBroadcaster
    typing: TypingTracker
    registry: ConnectionRegistry
    pipeline: MessagePipeline

    async def start(self) -> None:
        await self.registry.start()

    async def stop(self) -> None:
        await self.registry.stop()
        self.database.close()


def build_services(
    config: AppConfig,
    face_matcher: Optional[FaceMatcher] = None,
    mailer: Optional[Mailer] = None,
    clock: Clock = utcnow,
    monotonic: Callable[[], float] = time.monotonic,
) -> Services:
    """Wire every component from configuration.

    Args:
        config: Application configuration.
        face_matcher: Overrides the configured face provider.
        mailer: Overrides the configured email provider.
        clock: Wall clock for stored timestamps and invite expiry.
        monotonic: Clock for typing debounce and expiry.
    """
    database = Database(
        config.store.db_path,
        max_retries=config.store.max_retries,
        retry_backoff_s=config.store.retry_backoff_s,
    )
    store = RoomStore(database, clock=clock)
    jwt_secrets = config.secrets.jwt
    tokens = TokenService(
        secret_key=jwt_secrets.secret_key,
        refresh_secret_key=jwt_secrets.refresh_secret_key,
        algorithm=jwt_secrets.algorithm,
        access_ttl=timedelta(minutes=config.auth.token_expire_minutes),
        refresh_ttl=timedelta(days=config.auth.refresh_expire_days),
    )
    realtime = config.realtime
    broadcaster = RoomBroadcaster()
    typing = TypingTracker(
        broadcaster,
        debounce_seconds=realtime.typing_debounce_seconds,
        expiry_seconds=realtime.typing_expiry_seconds,
        clock=monotonic,
    )
    registry = ConnectionRegistry(
        tokens,
        store,
        broadcaster,
        typing,
        queue_size=realtime.outbound_queue_size,
        send_timeout=realtime.send_timeout_seconds,
    )
    services = Services(
        config=config,
        database=database,
        users=UserDirectory(database, clock=clock),
        store=store,
        invitations=InvitationService(store, ttl_days=config.invites.ttl_days),
        tokens=tokens,
        passwords=PasswordHasher(),
        faces=face_matcher or build_face_matcher(config.face, config.secrets.aws),
        mailer=mailer or build_mailer(config.email, config.secrets.aws),
        broadcaster=broadcaster,
        typing=typing,
        registry=registry,
        pipeline=MessagePipeline(store, broadcaster, typing),
    )
    logger.info(
        "Services ready (db=%s, face=%s, mail=%s)",
        config.store.db_path, type(services.faces).__name__, type(services.mailer).__name__,
    )
    return services
