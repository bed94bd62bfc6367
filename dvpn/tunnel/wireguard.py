"""
WireGuard Tunnel Control

Drives a WireGuard interface through the ``wg`` / ``wg-quick`` tools.

Commands used:
- ``wg show <iface> transfer``  -> per-peer cumulative rx/tx counters
- ``wg show <iface> dump``      -> interface line + one line per peer
- ``wg set <iface> peer <key> allowed-ips <cidrs> [endpoint ..] [persistent-keepalive ..]``
- ``wg set <iface> peer <key> remove``
- ``wg genkey`` / ``wg pubkey`` -> node keypair
- ``wg-quick up|down <iface>``  -> interface lifecycle
- ``install`` + ``tee <config-dir>/<iface>.conf`` -> interface config for ``wg-quick``

Arguments are passed as argv lists (no shell), so peer keys and addresses are
never interpolated into a command string.
"""

import asyncio
import logging
from typing import List, Optional, Sequence, Tuple

from dvpn.errors import CollaboratorFailure, InvalidKeyFormat
from dvpn.tunnel.control import (
    InterfaceStatus,
    TunnelControl,
    TunnelPeerCounters,
    is_valid_public_key,
)

logger = logging.getLogger(__name__)

NONE_FIELD = "(none)"


def parse_transfer_output(output: str) -> List[TunnelPeerCounters]:
    """
    Parse ``wg show <iface> transfer`` output.

    Each line is ``<public-key>\\t<rx-bytes>\\t<tx-bytes>``. Malformed lines are
    skipped.
    """
    peers = []
    for line in output.splitlines():
        parts = line.strip().split("\t")
        if len(parts) < 3:
            continue
        try:
            rx, tx = int(parts[1]), int(parts[2])
        except ValueError:
            logger.debug(f"Skipping malformed transfer line: {line!r}")
            continue
        peers.append(TunnelPeerCounters(public_key=parts[0], rx_bytes=rx, tx_bytes=tx))
    return peers


def parse_dump_output(output: str) -> List[TunnelPeerCounters]:
    """
    Parse the peer lines of ``wg show <iface> dump``.

    The first line describes the interface. Peer lines are
    ``key psk endpoint allowed-ips handshake rx tx keepalive`` separated by
    tabs, with ``(none)`` for unset fields. Malformed lines are skipped.
    """
    peers = []
    for line in output.strip().splitlines()[1:]:
        parts = line.strip().split("\t")
        if len(parts) < 7:
            continue
        try:
            rx, tx = int(parts[5]), int(parts[6])
        except ValueError:
            logger.debug(f"Skipping malformed dump line: {line!r}")
            continue
        endpoint = None if parts[2] == NONE_FIELD else parts[2]
        allowed_ips = () if parts[3] == NONE_FIELD else tuple(parts[3].split(","))
        peers.append(TunnelPeerCounters(
            public_key=parts[0],
            rx_bytes=rx,
            tx_bytes=tx,
            allowed_ips=allowed_ips,
            endpoint=endpoint,
        ))
    return peers


def render_config(
    private_key: str,
    address: str,
    listen_port: int,
    nat_interface: Optional[str] = None
) -> str:
    """
    Render the ``[Interface]`` section for ``wg-quick``.

    With ``nat_interface`` set, PostUp/PostDown rules forward client traffic
    and masquerade it out of that interface.
    """
    lines = [
        "[Interface]",
        f"PrivateKey = {private_key}",
        f"Address = {address}",
        f"ListenPort = {listen_port}",
        "SaveConfig = true",
    ]
    if nat_interface:
        lines += [
            "PostUp = iptables -A FORWARD -i %i -j ACCEPT; "
            f"iptables -t nat -A POSTROUTING -o {nat_interface} -j MASQUERADE",
            "PostDown = iptables -D FORWARD -i %i -j ACCEPT; "
            f"iptables -t nat -D POSTROUTING -o {nat_interface} -j MASQUERADE",
        ]
    return "\n".join(lines) + "\n"


class WireGuardControl(TunnelControl):
    """
    Tunnel control backed by the WireGuard command line tools.

    Example:
        >>> wg = WireGuardControl("wg0", use_sudo=True)
        >>> await wg.start_interface()
        >>> await wg.add_peer(key, ["10.0.0.2/32"])
    """

    def __init__(
        self,
        interface: str = "wg0",
        use_sudo: bool = False,
        manage_interface: bool = False,
        command_timeout: float = 5.0,
        config_dir: str = "/etc/wireguard",
        nat_interface: Optional[str] = None
    ):
        """
        Initialize WireGuard control.

        Args:
            interface: WireGuard interface name
            use_sudo: Prefix commands with ``sudo``
            manage_interface: Bring the interface down on :meth:`close`
            command_timeout: Upper bound for a single command (seconds)
            config_dir: Directory ``wg-quick`` reads interface configs from
            nat_interface: Uplink to masquerade client traffic through
        """
        self.interface = interface
        self.use_sudo = use_sudo
        self.manage_interface = manage_interface
        self.command_timeout = command_timeout
        self.config_dir = config_dir
        self.nat_interface = nat_interface
        self.private_key: Optional[str] = None
        self.public_key: Optional[str] = None

    async def _run(self, *argv: str, stdin: Optional[str] = None, privileged: bool = True) -> str:
        """Run a command and return stdout, raising CollaboratorFailure on error."""
        cmd = list(argv)
        if privileged and self.use_sudo:
            cmd.insert(0, "sudo")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if stdin is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CollaboratorFailure(f"Failed to execute {cmd[0]}: {e}", command=argv[0]) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(stdin.encode() if stdin is not None else None),
                timeout=self.command_timeout,
            )
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise CollaboratorFailure(
                f"Command timed out after {self.command_timeout}s: {' '.join(argv[:3])}",
                command=argv[0],
            ) from e

        if proc.returncode != 0:
            raise CollaboratorFailure(
                f"Command failed ({proc.returncode}): {stderr.decode(errors='replace').strip()}",
                command=argv[0],
                returncode=proc.returncode,
            )
        return stdout.decode()

    async def generate_keys(self) -> Tuple[str, str]:
        """Generate the node's WireGuard keypair."""
        private_key = (await self._run("wg", "genkey", privileged=False)).strip()
        public_key = (await self._run("wg", "pubkey", stdin=private_key, privileged=False)).strip()
        self.private_key, self.public_key = private_key, public_key
        logger.info("Generated WireGuard keypair")
        return private_key, public_key

    async def write_config(self, address: str, listen_port: int) -> str:
        """
        Write the interface config, generating the node keypair if needed.

        Returns:
            Path of the written config
        """
        if self.private_key is None:
            await self.generate_keys()

        path = f"{self.config_dir.rstrip('/')}/{self.interface}.conf"
        text = render_config(self.private_key, address, listen_port, self.nat_interface)
        # Created owner-only before the private key is written into it
        await self._run("install", "-m", "600", "/dev/null", path)
        await self._run("tee", path, stdin=text)
        logger.info(f"Wrote WireGuard config {path} (address {address}, port {listen_port})")
        return path

    async def configure(self, address: str, listen_port: int) -> None:
        await self.write_config(address, listen_port)
        await self.start_interface()

    async def start_interface(self):
        await self._run("wg-quick", "up", self.interface)
        logger.info(f"WireGuard interface {self.interface} up")

    async def stop_interface(self):
        await self._run("wg-quick", "down", self.interface)
        logger.info(f"WireGuard interface {self.interface} down")

    async def list_peers(self) -> List[TunnelPeerCounters]:
        output = await self._run("wg", "show", self.interface, "transfer")
        return parse_transfer_output(output)

    async def dump_peers(self) -> List[TunnelPeerCounters]:
        output = await self._run("wg", "show", self.interface, "dump")
        return parse_dump_output(output)

    async def interface_status(self) -> InterfaceStatus:
        try:
            output = await self._run("wg", "show", self.interface, "dump")
        except CollaboratorFailure as e:
            logger.warning(f"Interface {self.interface} unavailable: {e}")
            return InterfaceStatus(up=False, peer_count=0)

        # First line describes the interface, the rest are peers
        lines = [line for line in output.strip().splitlines() if line.strip()]
        return InterfaceStatus(up=True, peer_count=max(0, len(lines) - 1))

    async def add_peer(
        self,
        public_key: str,
        allowed_ips: Sequence[str],
        endpoint: Optional[str] = None,
        keepalive: Optional[int] = None
    ) -> None:
        if not is_valid_public_key(public_key):
            raise InvalidKeyFormat("Invalid WireGuard public key format", public_key=public_key)

        argv = [
            "wg", "set", self.interface,
            "peer", public_key,
            "allowed-ips", ",".join(allowed_ips),
        ]
        if endpoint:
            argv += ["endpoint", endpoint]
        if keepalive:
            argv += ["persistent-keepalive", str(keepalive)]

        await self._run(*argv)
        logger.debug(f"wg peer set: {public_key[:8]}... ({','.join(allowed_ips)})")

    async def remove_peer(self, public_key: str) -> None:
        await self._run("wg", "set", self.interface, "peer", public_key, "remove")
        logger.debug(f"wg peer removed: {public_key[:8]}...")

    async def close(self) -> None:
        if self.manage_interface:
            await self.stop_interface()
