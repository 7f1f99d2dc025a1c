"""
Tunnel forwarder subprocess.

Usage:
    python -m inference_manager.services.tunnels.forwarder \
        SSH_HOST SSH_USERNAME SSH_SECRET TARGET_HOST TARGET_PORT LOCAL_PORT

Authenticates to SSH_HOST with paramiko, listens on 127.0.0.1:LOCAL_PORT and
opens a separate direct-tcpip channel to TARGET_HOST:TARGET_PORT for every
accepted connection. Pass "-" as SSH_SECRET to read it from stdin.

Stdout carries exactly one line, the ready marker, once the listener is bound.
All diagnostics go to stderr. Exit status is 0 after SIGTERM/SIGINT and
non-zero on any failure.
"""

import argparse
import io
import select
import signal
import socketserver
import sys
import threading
from typing import List, Optional

import paramiko

from inference_manager.core.logging import tunnel_logger
from inference_manager.services.tunnels.schemas import BIND_HOST, ready_marker

EXIT_OK = 0
EXIT_FAILURE = 1
KEEPALIVE_INTERVAL = 30
CONNECT_TIMEOUT = 15
BUFFER_SIZE = 16384

_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


def load_private_key(material: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """Parse in-memory key material, trying each supported key type."""
    last_error: Optional[Exception] = None
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(material), password=passphrase)
        except (paramiko.SSHException, ValueError) as exc:
            last_error = exc
    raise paramiko.SSHException(f"Unsupported or invalid private key: {last_error}")


def is_key_material(secret: str) -> bool:
    return "PRIVATE KEY-----" in secret


class ForwardServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, server_address, handler_class, transport, target_host, target_port):
        self.transport = transport
        self.target_host = target_host
        self.target_port = target_port
        super().__init__(server_address, handler_class)


class ChannelHandler(socketserver.BaseRequestHandler):
    """Splices one local connection with its own SSH channel."""

    def handle(self):
        server: ForwardServer = self.server
        try:
            chan = server.transport.open_channel(
                "direct-tcpip",
                (server.target_host, server.target_port),
                self.request.getpeername(),
            )
        except Exception as exc:
            tunnel_logger.error(
                f"Forwarding error to {server.target_host}:{server.target_port}: {exc}"
            )
            return
        if chan is None:
            tunnel_logger.error("Forwarding request was rejected by the SSH server")
            return

        peer = self.request.getpeername()
        tunnel_logger.debug(f"Channel opened for {peer[0]}:{peer[1]}")
        try:
            while True:
                readable, _, _ = select.select([self.request, chan], [], [])
                if self.request in readable:
                    data = self.request.recv(BUFFER_SIZE)
                    if not data:
                        break
                    chan.sendall(data)
                if chan in readable:
                    data = chan.recv(BUFFER_SIZE)
                    if not data:
                        break
                    self.request.sendall(data)
        except OSError as exc:
            tunnel_logger.debug(f"Connection from {peer[0]}:{peer[1]} ended: {exc}")
        finally:
            chan.close()
            self.request.close()
            tunnel_logger.debug(f"Channel closed for {peer[0]}:{peer[1]}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="inference-tunnel",
        description="Forward a local port to a compute node through the cluster login host.",
    )
    parser.add_argument("ssh_host")
    parser.add_argument("ssh_username")
    parser.add_argument("ssh_secret", help="password or private key; '-' reads it from stdin")
    parser.add_argument("target_host")
    parser.add_argument("target_port", type=int)
    parser.add_argument("local_port", type=int)
    parser.add_argument("--ssh-port", type=int, default=22)
    return parser


def connect(args: argparse.Namespace, secret: str) -> paramiko.SSHClient:
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    connect_kwargs = {
        "hostname": args.ssh_host,
        "port": args.ssh_port,
        "username": args.ssh_username,
        "look_for_keys": False,
        "allow_agent": False,
        "timeout": CONNECT_TIMEOUT,
        "banner_timeout": CONNECT_TIMEOUT,
        "auth_timeout": CONNECT_TIMEOUT,
    }
    if is_key_material(secret):
        connect_kwargs["pkey"] = load_private_key(secret)
    else:
        connect_kwargs["password"] = secret
    client.connect(**connect_kwargs)
    client.get_transport().set_keepalive(KEEPALIVE_INTERVAL)
    return client


def run(argv: Optional[List[str]] = None, stop_event: Optional[threading.Event] = None) -> int:
    """Run the forwarder until a signal arrives (or stop_event is set)."""
    args = build_parser().parse_args(argv)
    secret = sys.stdin.read().rstrip("\r\n") if args.ssh_secret == "-" else args.ssh_secret

    try:
        client = connect(args, secret)
    except (paramiko.SSHException, OSError) as exc:
        tunnel_logger.error(f"SSH Connection Error: {exc}")
        return EXIT_FAILURE
    tunnel_logger.info("SSH Connection Ready")

    transport = client.get_transport()
    try:
        server = ForwardServer(
            (BIND_HOST, args.local_port),
            ChannelHandler,
            transport,
            args.target_host,
            args.target_port,
        )
    except OSError as exc:
        tunnel_logger.error(f"Tunnel server error: {exc}")
        client.close()
        return EXIT_FAILURE

    if stop_event is None:
        stop_event = threading.Event()

        def _request_stop(signum, frame):
            stop_event.set()

        signal.signal(signal.SIGTERM, _request_stop)
        signal.signal(signal.SIGINT, _request_stop)

    serve_thread = threading.Thread(target=server.serve_forever, daemon=True)
    serve_thread.start()

    sys.stdout.write(ready_marker(args.local_port, args.target_host, args.target_port) + "\n")
    sys.stdout.flush()

    exit_code = EXIT_OK
    while not stop_event.wait(1.0):
        if not transport.is_active():
            tunnel_logger.error("SSH transport closed unexpectedly")
            exit_code = EXIT_FAILURE
            break

    server.shutdown()
    server.server_close()
    client.close()
    tunnel_logger.info(f"Tunnel on {BIND_HOST}:{args.local_port} closed")
    return exit_code


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
