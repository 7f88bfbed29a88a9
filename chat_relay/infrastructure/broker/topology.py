"""
Broker Topology

Architecture:
    Topology (Public API)
        ├── TopologyNames       exchange / queue / routing key names
        ├── declare()           full declaration pass (idempotent)
        ├── ensure_declared()   declare() once, and again after a reconnect
        ├── ensure_queue()      any application queue with the DLX arguments
        └── declare_instance_queue()

Declaration order matters: the dead-letter exchange and queue come first,
because every application queue references the DLX in its arguments.

    relay.dlx (direct) ──dead.letter──> relay.dead.letter
    relay.messages (topic) ──message.received──> relay.messages.bridge
    relay.commands (topic) ──send.*──> relay.send.commands
    relay.events (topic) ──instance.*──> relay.instance.queue.<id>

AMQP declarations are idempotent as long as the arguments match, so running
declare() any number of times leaves the broker in the same state.
"""

from dataclasses import dataclass

from aio_pika import ExchangeType
from aio_pika.abc import AbstractExchange, AbstractQueue
from aiormq.exceptions import ChannelPreconditionFailed

from chat_relay.core.exceptions import TopologyError
from chat_relay.core.logging import get_logger
from chat_relay.infrastructure.broker.connection import BrokerConnection

logger = get_logger(__name__)

DEFAULT_EXCHANGE = ""


@dataclass(frozen=True)
class TopologyNames:
    events_exchange: str = "relay.events"
    messages_exchange: str = "relay.messages"
    commands_exchange: str = "relay.commands"
    dead_letter_exchange: str = "relay.dlx"

    send_commands_queue: str = "relay.send.commands"
    bridge_queue: str = "relay.messages.bridge"
    dead_letter_queue: str = "relay.dead.letter"
    instance_queue_prefix: str = "relay.instance.queue."

    message_received_key: str = "message.received"
    send_command_pattern: str = "send.*"
    dead_letter_key: str = "dead.letter"

    def instance_queue(self, instance_id: str) -> str:
        return f"{self.instance_queue_prefix}{instance_id}"


class Topology:
    """
    Declares and caches exchanges and queues on the shared channel.

    Usage:
        topology = Topology(connection)
        await topology.declare()
        exchange = await topology.get_exchange("relay.messages")
    """

    def __init__(self, connection: BrokerConnection, names: TopologyNames | None = None):
        self._connection = connection
        self.names = names or TopologyNames()
        self._exchanges: dict[str, AbstractExchange] = {}
        self._queues: dict[str, AbstractQueue] = {}
        self._declared = False
        connection.add_reconnect_listener(self.mark_stale)

    @property
    def connection(self) -> BrokerConnection:
        return self._connection

    @property
    def declared(self) -> bool:
        return self._declared

    def mark_stale(self) -> None:
        """Forget cached declarations; the next ensure_declared() redoes them."""
        self._declared = False
        self._exchanges.clear()
        self._queues.clear()

    def dead_letter_arguments(self) -> dict[str, str]:
        return {
            "x-dead-letter-exchange": self.names.dead_letter_exchange,
            "x-dead-letter-routing-key": self.names.dead_letter_key,
        }

    # ------------------------------------------------------------------
    # Declarations
    # ------------------------------------------------------------------

    async def declare(self) -> None:
        """
        Declare the full relay topology.

        STAGE-TOPO.1: Topology declaration

        Raises:
            TopologyError: A declaration conflicts with an existing object
        """
        names = self.names
        try:
            # Dead-letter side first
            dlx = await self._declare_exchange(names.dead_letter_exchange, ExchangeType.DIRECT)
            dlq = await self._declare_queue(names.dead_letter_queue, dead_lettered=False)
            await dlq.bind(dlx, routing_key=names.dead_letter_key)

            await self._declare_exchange(names.events_exchange, ExchangeType.TOPIC)
            messages = await self._declare_exchange(names.messages_exchange, ExchangeType.TOPIC)
            commands = await self._declare_exchange(names.commands_exchange, ExchangeType.TOPIC)

            send_queue = await self._declare_queue(names.send_commands_queue)
            await send_queue.bind(commands, routing_key=names.send_command_pattern)

            bridge_queue = await self._declare_queue(names.bridge_queue)
            await bridge_queue.bind(messages, routing_key=names.message_received_key)
        except ChannelPreconditionFailed as e:
            logger.error("Topology declaration rejected", stage="TOPO.ERR", error=str(e))
            raise TopologyError(f"Topology declaration rejected: {e}") from e

        self._declared = True
        logger.info(
            "Topology declared",
            stage="TOPO.1",
            exchanges=sorted(self._exchanges),
            queues=sorted(self._queues),
        )

    async def ensure_declared(self) -> None:
        if not self._declared:
            await self.declare()

    async def declare_instance_queue(self, instance_id: str) -> AbstractQueue:
        """
        Per-instance queue receiving lifecycle events for that instance.

        Bound on the events exchange to instance.create, instance.delete and
        instance.<id>.*.
        """
        names = self.names
        events = await self.get_exchange(names.events_exchange)
        queue = await self._declare_queue(names.instance_queue(instance_id))
        for routing_key in ("instance.create", "instance.delete", f"instance.{instance_id}.*"):
            await queue.bind(events, routing_key=routing_key)
        logger.info("Instance queue declared", stage="TOPO.2", instance_id=instance_id)
        return queue

    async def ensure_queue(self, name: str) -> AbstractQueue:
        """Declare an application queue (with dead-letter arguments) once."""
        queue = self._queues.get(name)
        if queue is None:
            queue = await self._declare_queue(name)
        return queue

    async def get_exchange(self, name: str) -> AbstractExchange:
        """Cached exchange object; the default exchange ("") is never declared."""
        channel = await self._connection.get_channel()
        if name == DEFAULT_EXCHANGE:
            return channel.default_exchange
        exchange = self._exchanges.get(name)
        if exchange is None:
            await self.ensure_declared()
            exchange = self._exchanges.get(name)
        if exchange is None:
            # Not one of ours; must already exist
            exchange = await channel.get_exchange(name, ensure=True)
            self._exchanges[name] = exchange
        return exchange

    async def _declare_exchange(self, name: str, kind: ExchangeType) -> AbstractExchange:
        channel = await self._connection.get_channel()
        exchange = await channel.declare_exchange(name, kind, durable=True)
        self._exchanges[name] = exchange
        return exchange

    async def _declare_queue(self, name: str, dead_lettered: bool = True) -> AbstractQueue:
        channel = await self._connection.get_channel()
        queue = await channel.declare_queue(
            name,
            durable=True,
            arguments=self.dead_letter_arguments() if dead_lettered else None,
        )
        self._queues[name] = queue
        return queue
