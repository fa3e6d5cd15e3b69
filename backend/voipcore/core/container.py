"""
Service Container
Builds the pipeline's collaborators once per process (API or worker)
"""
import logging
from dataclasses import dataclass
from typing import Optional

from supabase import create_client

from voipcore.core.config import ConfigManager, Settings
from voipcore.domain.interfaces.analysis_pipeline import AnalysisPipeline
from voipcore.domain.interfaces.realtime import RealtimePublisher
from voipcore.domain.interfaces.telephony_provider import TelephonyProvider
from voipcore.domain.services.billing_service import BillingLedger
from voipcore.domain.services.call_state_machine import CallStateMachine
from voipcore.domain.services.dead_letter_service import DeadLetterService
from voipcore.domain.services.power_dialer import DialerRegistry, PowerDialer
from voipcore.domain.services.rate_resolver import RateResolver
from voipcore.domain.services.recording_service import RecordingService
from voipcore.domain.services.token_service import VoiceTokenService
from voipcore.domain.services.webhook_ingress import WebhookIngress
from voipcore.infrastructure.analysis.http_analysis_client import (
    HttpAnalysisClient,
    LoggingAnalysisPipeline,
)
from voipcore.infrastructure.realtime.redis_publisher import (
    InMemoryRealtimePublisher,
    RedisRealtimePublisher,
)
from voipcore.infrastructure.storage.memory_store import InMemoryStore
from voipcore.infrastructure.telephony.factory import TelephonyFactory
from voipcore.workers.dead_letter_worker import DeadLetterSweeper

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Everything the endpoints and the worker need, wired together."""
    settings: Settings
    config: ConfigManager
    store: object
    publisher: RealtimePublisher
    telephony: TelephonyProvider
    analysis: AnalysisPipeline
    dead_letters: DeadLetterService
    rate_resolver: RateResolver
    ledger: BillingLedger
    state_machine: CallStateMachine
    recordings: RecordingService
    ingress: WebhookIngress
    sweeper: DeadLetterSweeper
    tokens: VoiceTokenService
    dialers: DialerRegistry

    @classmethod
    async def build(
        cls,
        settings: Settings,
        config: ConfigManager,
        store: Optional[object] = None,
        telephony: Optional[TelephonyProvider] = None,
        publisher: Optional[RealtimePublisher] = None,
        analysis: Optional[AnalysisPipeline] = None
    ) -> "ServiceContainer":
        """
        Args:
            store: Repository implementation override (tests)
            telephony: Provider override (tests)
            publisher: Realtime publisher override (tests)
            analysis: Analysis pipeline override (tests)
        """
        if store is None:
            store = cls._build_store(settings)
        if publisher is None:
            publisher = await cls._build_publisher(settings, config)
        if telephony is None:
            telephony = TelephonyFactory.create(settings.telephony_provider, settings, config)
        if analysis is None:
            analysis = (
                HttpAnalysisClient(settings.analysis_url, settings.analysis_api_key)
                if settings.analysis_url else LoggingAnalysisPipeline()
            )

        dead_letters = DeadLetterService(store)
        rate_resolver = RateResolver(store, fallback=config.fallback_tariff())
        ledger = BillingLedger(
            calls=store,
            billing=store,
            rate_resolver=rate_resolver,
            dead_letters=dead_letters,
            max_cas_attempts=config.get("billing.max_cas_attempts"),
        )
        state_machine = CallStateMachine(
            calls=store,
            telephony=telephony,
            dead_letters=dead_letters,
            ledger=ledger,
            publisher=publisher,
        )
        recordings = RecordingService(
            calls=store,
            recordings=store,
            analysis=analysis,
            dead_letters=dead_letters,
        )
        ingress = WebhookIngress(
            state_machine=state_machine,
            dead_letters=dead_letters,
            recordings=recordings,
            unknown_call_attempts=int(config.get("webhooks.unknown_call_attempts", 3)),
            unknown_call_backoff_seconds=float(config.get("webhooks.unknown_call_backoff_seconds", 0.5)),
        )
        sweeper = DeadLetterSweeper(
            dead_letters=dead_letters,
            ledger=ledger,
            state_machine=state_machine,
            recordings=recordings,
            max_attempts=int(config.get("dead_letters.max_attempts", 5)),
            batch_size=int(config.get("dead_letters.batch_size", 50)),
        )
        tokens = VoiceTokenService(
            account_sid=settings.twilio_account_sid,
            api_key_sid=settings.twilio_api_key_sid,
            api_key_secret=settings.twilio_api_key_secret,
            twiml_app_sid=settings.twilio_twiml_app_sid,
            default_ttl=int(config.get("tokens.voice_ttl_seconds", 3600)),
        )

        wrap_up_seconds = float(config.get("dialer.wrap_up_seconds", 15))
        inter_call_delay = float(config.get("dialer.inter_call_delay_seconds", 3))

        def dialer_factory(**kwargs) -> PowerDialer:
            return PowerDialer(
                state_machine=state_machine,
                queue_repository=store,
                contacts=store,
                publisher=publisher,
                wrap_up_seconds=wrap_up_seconds,
                inter_call_delay_seconds=inter_call_delay,
                **kwargs,
            )

        logger.info(
            f"Services ready (storage={type(store).__name__}, "
            f"telephony={telephony.name}, realtime={type(publisher).__name__})"
        )

        return cls(
            settings=settings,
            config=config,
            store=store,
            publisher=publisher,
            telephony=telephony,
            analysis=analysis,
            dead_letters=dead_letters,
            rate_resolver=rate_resolver,
            ledger=ledger,
            state_machine=state_machine,
            recordings=recordings,
            ingress=ingress,
            sweeper=sweeper,
            tokens=tokens,
            dialers=DialerRegistry(dialer_factory),
        )

    @staticmethod
    def _build_store(settings: Settings):
        if settings.storage_backend == "supabase":
            from voipcore.infrastructure.storage.supabase_store import SupabaseStore
            if not settings.supabase_url or not settings.supabase_service_key:
                raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
            return SupabaseStore(create_client(settings.supabase_url, settings.supabase_service_key))

        if settings.storage_backend != "memory":
            raise ValueError(f"Unknown storage backend: {settings.storage_backend}")

        logger.warning("Using in-memory storage - data is lost on restart")
        return InMemoryStore()

    @staticmethod
    async def _build_publisher(settings: Settings, config: ConfigManager) -> RealtimePublisher:
        buffer_size = int(config.get("realtime.memory_buffer_size", 1000))
        if not settings.realtime_enabled:
            return InMemoryRealtimePublisher(max_events=buffer_size)

        publisher = RedisRealtimePublisher(settings.redis_url)
        try:
            await publisher.connect()
            return publisher
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            logger.warning("Realtime fan-out disabled - running in memory-only mode")
            return InMemoryRealtimePublisher(max_events=buffer_size)

    async def close(self) -> None:
        await self.dialers.shutdown()
        await self.state_machine.drain()
        await self.recordings.drain()
        await self.telephony.cleanup()
        await self.publisher.close()
