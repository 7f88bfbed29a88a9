"""
Relay Runtime (composition root)

Builds every component from Settings, starts them in dependency order and
stops them in reverse. Registries (breakers, limiter, scheduler, metrics) are
created here once and handed to the components that need them; nothing in
the relay reaches for a module-level singleton.

Startup order:
    1. Redis (dead-letter store, replay log)
    2. Broker connection (+ optional permission probe)
    3. Topology declaration
    4. Persistent store
    5. Stream bridge (broker → log → store)
    6. Send-command consumer (only with a session provider)
    7. Dead-letter sweep + admission cleanup timers
    8. Inbound pump (only with a session provider)
"""

from typing import Any

from chat_relay.config.settings import Settings, get_settings
from chat_relay.core.interfaces.persistent_store import PersistentStore
from chat_relay.core.interfaces.session_provider import SessionProvider
from chat_relay.core.logging import get_logger
from chat_relay.core.resilience.circuit_breaker import CircuitBreakerRegistry
from chat_relay.core.resilience.error_classifier import BackoffPolicy, ErrorHandler
from chat_relay.core.resilience.rate_limiter import RateLimiterDedup
from chat_relay.core.resilience.reliable_consumer import ConsumerConfig, ReliableConsumer
from chat_relay.core.resilience.scheduler import Clock, PeriodicTask, Scheduler
from chat_relay.infrastructure.broker import BrokerConnection, Producer, QueueManager, Topology
from chat_relay.infrastructure.cache import RedisClient
from chat_relay.infrastructure.dead_letter import DeadLetterStore, RetryCoordinator
from chat_relay.infrastructure.monitoring import MetricsCollector
from chat_relay.infrastructure.storage import InMemoryPersistentStore
from chat_relay.infrastructure.streams import StreamBridge
from chat_relay.services import InboundEventPump, SendCommandHandler

logger = get_logger(__name__)


class RelayRuntime:
    """
    Usage:
        runtime = RelayRuntime(get_settings(), session_provider=provider)
        await runtime.start()
        ...
        await runtime.stop()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        session_provider: SessionProvider | None = None,
        persistent_store: PersistentStore | None = None,
        clock: Clock | None = None,
        metrics: MetricsCollector | None = None,
        redis_client: RedisClient | None = None,
        connection: BrokerConnection | None = None,
    ):
        self.settings = settings or get_settings()
        self.session_provider = session_provider

        # ===== Shared registries =====
        self.scheduler = Scheduler(clock)
        self.clock = self.scheduler.clock
        self.metrics = metrics or MetricsCollector()
        self.breakers = CircuitBreakerRegistry(
            clock=self.clock,
            defaults=self.settings.circuit_breaker.for_name,
            metrics=self.metrics,
        )
        rate_limit = self.settings.rate_limit
        self.rate_limiter = RateLimiterDedup(
            window_ms=rate_limit.RATE_LIMIT_WINDOW_MS,
            max_per_window=rate_limit.MAX_MESSAGES_PER_WINDOW,
            clock=self.clock,
            metrics=self.metrics,
        )
        retry = self.settings.retry
        self.error_handler = ErrorHandler(
            max_retries=retry.RETRY_MAX_RETRIES,
            backoff=BackoffPolicy(
                base_delay_ms=retry.RETRY_BASE_DELAY_MS,
                max_delay_ms=retry.RETRY_MAX_DELAY_MS,
                exponential=retry.RETRY_EXPONENTIAL_BACKOFF,
            ),
            dlq_enabled=retry.DLQ_ENABLED,
        )

        # ===== Broker =====
        self.connection = connection or BrokerConnection(self.settings.broker, self.scheduler)
        self.topology = Topology(self.connection)
        self.producer = Producer(self.topology, self.metrics)
        self.queue_manager = QueueManager(
            self.connection, retry, self.clock, self.metrics, self.error_handler, topology=self.topology
        )

        # ===== Dead-letter =====
        self.redis = redis_client or RedisClient(self.settings.redis)
        self.dead_letter_store = DeadLetterStore(
            self.redis, self.producer, self.settings.dead_letter, self.clock, self.metrics
        )
        self.retry_coordinator = RetryCoordinator(
            self.dead_letter_store,
            self.scheduler,
            self.settings.dead_letter,
            self.metrics,
            queue_manager=self.queue_manager,
            dead_letter_queue=self.topology.names.dead_letter_queue,
        )

        # ===== Inbound path =====
        self.persistent_store = persistent_store or InMemoryPersistentStore(self.clock)
        self.stream_bridge = StreamBridge(
            self.topology,
            self.redis,
            self.persistent_store,
            self.settings.stream,
            self.clock,
            self.metrics,
        )
        self.inbound_pump = InboundEventPump(self.producer, dead_letter_store=self.dead_letter_store)

        # ===== Outbound path =====
        self.send_handler: SendCommandHandler | None = None
        self.consumer: ReliableConsumer | None = None
        if session_provider is not None:
            self.send_handler = SendCommandHandler(session_provider, self.breakers, self.rate_limiter)
            self.consumer = ReliableConsumer(
                self.producer,
                {self.topology.names.send_commands_queue: self.send_handler},
                error_handler=self.error_handler,
                clock=self.clock,
                dead_letter_store=self.dead_letter_store,
                metrics=self.metrics,
                config=ConsumerConfig(max_retries=retry.RETRY_MAX_RETRIES),
                name="send-commands",
                scheduler=self.scheduler,
            )

        self._cleanup_task: PeriodicTask | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        STAGE-RUNTIME.1: Startup
        """
        if self._running:
            return
        app = self.settings.app
        logger.info(
            "Starting chat relay",
            stage="RUNTIME.1",
            environment=app.ENVIRONMENT,
            version=app.APP_VERSION,
        )

        await self.redis.connect()
        logger.info("Redis connected", stage="RUNTIME.1")

        await self.connection.connect()
        logger.info("Broker connected", stage="RUNTIME.1", url=self.connection.masked_url)

        if self.settings.broker.RABBITMQ_VALIDATE_PERMISSIONS:
            permissions = await self.queue_manager.validate_permissions()
            if permissions["errors"]:
                logger.warning("Broker permission probe reported errors", stage="RUNTIME.1", **permissions)

        await self.topology.declare()
        await self.persistent_store.initialize()

        await self.stream_bridge.start()

        if self.consumer is not None:
            await self.consumer.start()
        else:
            logger.warning("No session provider configured, send commands are not consumed", stage="RUNTIME.1")

        self.retry_coordinator.start()
        self._cleanup_task = self.scheduler.every(
            "rate-limit-cleanup",
            self.settings.rate_limit.RATE_LIMIT_CLEANUP_INTERVAL_SECONDS,
            self.rate_limiter.cleanup_async,
            run_immediately=False,
        )

        if self.session_provider is not None:
            self.inbound_pump.attach(self.session_provider)
            await self.inbound_pump.start()

        self._running = True
        logger.info("Chat relay started", stage="RUNTIME.1")

    async def stop(self) -> None:
        """
        STAGE-RUNTIME.2: Shutdown (reverse startup order)
        """
        logger.info("Stopping chat relay", stage="RUNTIME.2")

        await self.inbound_pump.stop()
        if self.consumer is not None:
            await self.consumer.stop()
        await self.stream_bridge.stop()
        await self.retry_coordinator.stop()
        await self.scheduler.shutdown()
        self._cleanup_task = None

        await self.connection.close()
        await self.redis.disconnect()

        self._running = False
        logger.info("Chat relay stopped", stage="RUNTIME.2")

    async def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "broker": self.connection.health_check(),
            "redis": await self.redis.health_check(),
            "queues": self.queue_manager.stats(),
            "consumer": self.consumer.stats() if self.consumer else None,
            "circuit_breakers": self.breakers.all_stats(),
            "rate_limiter": self.rate_limiter.stats(),
            "dead_letter": await self.dead_letter_store.stats(),
            "dead_letter_sweep": (
                self.retry_coordinator.last_sweep.to_dict() if self.retry_coordinator.last_sweep else None
            ),
            "stream_bridge": await self.stream_bridge.stats(),
            "inbound_pump": self.inbound_pump.stats(),
        }
