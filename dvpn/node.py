"""
Bandwidth Node

Wires the engine components into a running node:

- client admission (key check -> address -> tunnel -> peer ledger)
- peer ledger rebuilt from the tunnel on start
- periodic bandwidth metering and usage reporting
- settlement of payment tickets returned by the ledger
- node status for operators, logged on a heartbeat

Tunnel and ledger stay independently consistent: a client admission that
fails half way is rolled back on the side that succeeded.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from dvpn.blockchain.connector import LedgerConnector, create_ledger_connector
from dvpn.config import NodeConfig
from dvpn.errors import CollaboratorFailure, EngineError, InvalidKeyFormat
from dvpn.formatting import format_bytes, format_uptime
from dvpn.messages import PaymentTicket
from dvpn.notify import NotificationHub
from dvpn.peers.ledger import Peer, PeerLedger
from dvpn.peers.meter import BandwidthMeter, UsageAccumulator
from dvpn.peers.reporter import Ed25519ReportSigner, ReportSigner, UsageReporter
from dvpn.scheduler import PeriodicTask
from dvpn.settlement.accounts import SECONDS_PER_DAY, NodeAccount, NodeRegistry
from dvpn.settlement.coordinator import SettlementCoordinator, SettlementOutcome
from dvpn.settlement.custody import Custody
from dvpn.settlement.streams import StreamLedger
from dvpn.tunnel.addresses import AddressPool
from dvpn.tunnel.control import TunnelControl, is_valid_public_key

logger = logging.getLogger(__name__)

# Decay is counted in whole days; checking hourly is plenty
DECAY_INTERVAL = SECONDS_PER_DAY / 24


class BandwidthNode:
    """
    dVPN bandwidth node.

    Example:
        >>> node = BandwidthNode(NodeConfig(), MemoryTunnel())
        >>> await node.start()
        >>> await node.connect_client(client_key)
        >>> await node.stop()
    """

    def __init__(
        self,
        config: NodeConfig,
        tunnel: TunnelControl,
        connector: Optional[LedgerConnector] = None,
        custody: Optional[Custody] = None,
        signer: Optional[ReportSigner] = None,
        notifier: Optional[NotificationHub] = None,
        clock: Callable[[], float] = time.time,
        keypair: Any = None
    ):
        """
        Initialize bandwidth node.

        Args:
            config: Node configuration
            tunnel: Tunnel control implementation
            connector: Ledger connector (defaults to one built for ``config.mock_mode``)
            custody: Balance book for streams and stake
            signer: Usage report signer (defaults to a fresh Ed25519 key)
            notifier: Notification hub for subscribers
            clock: Time source shared by all components
            keypair: substrate-interface Keypair for the live ledger connector
        """
        self.config = config
        self.tunnel = tunnel
        self.clock = clock
        self.notifier = notifier or NotificationHub()
        self.custody = custody or Custody()
        self.signer = signer or Ed25519ReportSigner()
        self.address = config.node_address or self.signer.public_key_hex

        # Peer accounting
        self.peers = PeerLedger(notifier=self.notifier, clock=clock)
        self.addresses = AddressPool(config.wg_subnet)
        self.accumulator = UsageAccumulator()
        self.meter = BandwidthMeter(
            tunnel,
            self.peers,
            accumulator=self.accumulator,
            timeout=config.collaborator_timeout,
            clock=clock,
        )

        # Settlement
        self.streams = StreamLedger(
            self.custody,
            clock=clock,
            id_policy=config.stream_id_policy,
            notifier=self.notifier,
        )
        self.registry = NodeRegistry(
            self.custody,
            min_stake=config.min_stake,
            slash_amount=config.slash_amount,
            slash_reputation_penalty=config.slash_reputation_penalty,
            reputation_decay_per_day=config.reputation_decay_per_day,
            clock=clock,
            notifier=self.notifier,
        )
        self.coordinator = SettlementCoordinator(
            self.registry,
            fee_bps=config.fee_bps,
            min_payment=config.min_payment,
            notifier=self.notifier,
        )

        self.connector = connector or create_ledger_connector(
            mock_mode=config.mock_mode,
            node_url=config.rpc_url,
            keypair=keypair,
            stream_ledger=self.streams,
            node_registry=self.registry,
            custody=self.custody,
        )
        self.reporter = UsageReporter(
            self.accumulator,
            self.signer,
            self.connector,
            self.address,
            timeout=config.collaborator_timeout,
            clock=clock,
            on_ticket=self.apply_ticket,
            notifier=self.notifier,
        )

        self._tasks: List[PeriodicTask] = [
            PeriodicTask("bandwidth-meter", config.meter_interval, self.meter.safe_tick),
            PeriodicTask("usage-report", config.report_interval, self.reporter.safe_tick),
        ]
        if config.reputation_decay_per_day:
            self._tasks.append(PeriodicTask("reputation-decay", DECAY_INTERVAL, self._decay_tick))
        if config.status_interval:
            self._tasks.append(PeriodicTask("node-status", config.status_interval, self._status_tick))

        # Peer admission changes run one at a time
        self._admission_lock = asyncio.Lock()

        self.running = False
        self.started_at: Optional[float] = None

    async def start(self):
        """
        Connect to the ledger, optionally bring up the interface, rebuild the
        peer ledger from clients already on the tunnel, then start the
        periodic jobs.
        """
        if self.running:
            logger.warning("Node already running")
            return

        await self.connector.connect()

        if self.config.configure_interface:
            await self.tunnel.configure(self.interface_address, self.config.wg_port)

        status = await self.tunnel.interface_status()
        if status.up:
            await self.restore_peers()
        else:
            logger.warning("Tunnel interface is down; metering will fail until it is up")

        for task in self._tasks:
            await task.start()

        self.running = True
        self.started_at = self.clock()
        logger.info(f"Bandwidth node {self.address[:16]} started")

    async def stop(self):
        """
        Stop periodic jobs (in-flight ticks get the configured grace period),
        then release the tunnel interface and the ledger connection.
        """
        if not self.running:
            return

        self.running = False
        await asyncio.gather(*(task.stop(self.config.shutdown_grace) for task in self._tasks))

        try:
            await self.tunnel.close()
        except CollaboratorFailure as e:
            logger.error(f"Failed to release tunnel interface: {e}")
        await self.connector.disconnect()

        logger.info("Bandwidth node stopped")

    @property
    def interface_address(self) -> str:
        """Server's own tunnel address in CIDR form."""
        return f"{self.addresses.server_address}/{self.addresses.network.prefixlen}"

    async def restore_peers(self) -> int:
        """
        Add peers already configured on the tunnel to the peer ledger.

        Their current counters become the metering baseline and their pool
        addresses are reserved. Peers without a usable route get a fresh
        address pushed to the tunnel.

        Returns:
            Number of peers restored
        """
        async with self._admission_lock:
            try:
                entries = await self._tunnel_call(self.tunnel.dump_peers())
            except CollaboratorFailure as e:
                logger.warning(f"Could not read tunnel peers, starting with an empty ledger: {e}")
                return 0

            restored = 0
            for entry in entries:
                key = entry.public_key
                if key in self.peers:
                    continue
                if not is_valid_public_key(key):
                    logger.warning(f"Ignoring tunnel peer with malformed key {key[:8]}...")
                    continue

                try:
                    allowed_ips = list(entry.allowed_ips)
                    if self.addresses.reserve_from(key, allowed_ips) is None and not allowed_ips:
                        client_ip = self.addresses.allocate(key)
                        allowed_ips = [f"{client_ip}/{self.addresses.host_prefix}"]
                        await self._tunnel_call(self.tunnel.add_peer(
                            key,
                            allowed_ips,
                            endpoint=entry.endpoint,
                            keepalive=self.config.persistent_keepalive,
                        ))
                    self.meter.baseline(key, entry.rx_bytes, entry.tx_bytes)
                    self.peers.add_peer(key, allowed_ips, entry.endpoint)
                except EngineError as e:
                    logger.warning(f"Could not restore tunnel peer {key[:8]}...: {e}")
                    if key not in self.peers:
                        self.addresses.release(key)
                    continue
                restored += 1

        if restored:
            logger.info(f"Restored {restored} peer(s) from tunnel {self.config.wg_interface}")
        return restored

    async def _tunnel_call(self, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.config.collaborator_timeout)
        except asyncio.TimeoutError as e:
            raise CollaboratorFailure(
                f"Tunnel command exceeded {self.config.collaborator_timeout}s"
            ) from e

    async def connect_client(self, public_key: str, endpoint: Optional[str] = None) -> Peer:
        """
        Admit a client: assign an address, configure the tunnel, record the peer.

        Admissions and removals are serialized.

        Raises:
            InvalidKeyFormat: malformed key (nothing touched)
            InvalidState: address pool exhausted
            CollaboratorFailure: tunnel rejected the peer (address released)
        """
        if not is_valid_public_key(public_key):
            raise InvalidKeyFormat("Invalid tunnel public key format", public_key=public_key)

        async with self._admission_lock:
            newly_assigned = self.addresses.address_of(public_key) is None
            client_ip = self.addresses.allocate(public_key)
            allowed_ips = [f"{client_ip}/{self.addresses.host_prefix}"]

            try:
                await self._tunnel_call(self.tunnel.add_peer(
                    public_key,
                    allowed_ips,
                    endpoint=endpoint,
                    keepalive=self.config.persistent_keepalive,
                ))
            except EngineError:
                if newly_assigned:
                    self.addresses.release(public_key)
                raise

            try:
                peer = self.peers.add_peer(public_key, allowed_ips, endpoint)
            except EngineError:
                logger.error(f"Peer ledger rejected {public_key[:8]}..., removing from tunnel")
                try:
                    await self._tunnel_call(self.tunnel.remove_peer(public_key))
                except CollaboratorFailure as e:
                    logger.error(f"Tunnel rollback failed for {public_key[:8]}...: {e}")
                if newly_assigned:
                    self.addresses.release(public_key)
                raise

        logger.info(f"Client connected: {public_key[:8]}... -> {client_ip}")
        return peer

    async def disconnect_client(self, public_key: str) -> bool:
        """
        Remove a client from the tunnel and the peer ledger.

        Returns:
            False when the client was not connected

        Raises:
            CollaboratorFailure: tunnel removal failed (ledger left unchanged)
        """
        async with self._admission_lock:
            if public_key not in self.peers and self.addresses.address_of(public_key) is None:
                return False

            await self._tunnel_call(self.tunnel.remove_peer(public_key))

            self.peers.remove_peer(public_key)
            self.meter.forget(public_key)
            released = self.addresses.release(public_key)

        logger.info(f"Client disconnected: {public_key[:8]}... (released {released})")
        return True

    def register(self, stake: int, metadata: str = "") -> NodeAccount:
        """Register this node with ``stake`` escrowed from its own balance."""
        return self.registry.register_node(self.address, metadata, stake)

    def apply_ticket(self, ticket: PaymentTicket) -> SettlementOutcome:
        """Settle a payment ticket addressed to this node."""
        return self.coordinator.process_payment(ticket)

    async def _decay_tick(self):
        decayed = self.registry.apply_decay()
        if decayed:
            logger.info(f"Reputation decayed for {decayed} node(s)")

    async def _status_tick(self):
        status = await self.status()
        interface = status["interface"]
        logger.info(
            f"Node status: {interface['name']} {'up' if interface['up'] else 'down'}, "
            f"peers {status['peers']['active']}/{status['peers']['total']} active, "
            f"bandwidth {status['bandwidth']['total']}, uptime {status['uptime']}"
        )

    async def status(self) -> Dict[str, Any]:
        """Operator view of the node."""
        interface = await self.tunnel.interface_status()
        peers = self.peers.list()
        rx = sum(p.bytes_rx for p in peers)
        tx = sum(p.bytes_tx for p in peers)
        uptime = self.clock() - self.started_at if self.started_at else 0
        account = self.registry.get(self.address)
        pending = self.reporter.pending_report

        return {
            "address": self.address,
            "running": self.running,
            "interface": {
                "name": self.config.wg_interface,
                "up": interface.up,
                "peer_count": interface.peer_count,
            },
            "peers": {
                "total": len(peers),
                "active": sum(1 for p in peers if p.is_active),
            },
            "bandwidth": {
                "received": format_bytes(rx),
                "sent": format_bytes(tx),
                "total": format_bytes(rx + tx),
                "unreported": self.accumulator.total_bytes,
            },
            "uptime": format_uptime(uptime),
            "account": account.to_dict() if account else None,
            "pending_report": pending.report_id if pending else None,
            "fee_pool": str(self.coordinator.fee_pool),
        }
