import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Optional, Tuple

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from . import crypto
from . import transport
from .bridge import ProcessBridge, StdioEndpoint
from .contacts import ContactBook, ContactStore, format_entry
from .conversation import SecureConversation
from .errors import SessionError
from .policy import AuthorizationConfig, AuthorizationPolicy
from .session import ConversationOrchestrator, Session

"""
run.py - single entry point for otrpipe.

What you can do here:
- genkey:        create your private key (once)
- fingerprints:  list your contacts' fingerprints, including your own ("self")
- connect:       start a conversation with someone listening
- listen:        wait for someone to connect
- proxy:         converse over a command's stdin/stdout instead of TCP

Decrypted text goes to stdout (or to the -exec command) and what you type
is sent, but only once the other side is encrypted and authorized.
"""

logger = logging.getLogger(__name__)

DEFAULT_PORT = 2147
DIR_ENV = "OTRPIPE_DIR"
KEY_FILE = "id.priv"
CONTACTS_FILE = "contacts"


# -------------------------
# Paths, keys and contacts
# -------------------------

def default_dir() -> str:
    """Where keys and contacts live: $OTRPIPE_DIR, else ~/.otrpipe."""
    return os.environ.get(DIR_ENV) or str(Path.home() / ".otrpipe")


def resolve_paths(args: argparse.Namespace) -> Tuple[Path, Path, Path]:
    directory = Path(os.path.expanduser(os.path.expandvars(args.dir)))
    key_path = Path(args.key) if args.key else directory / KEY_FILE
    contacts_path = Path(args.contacts) if getattr(args, "contacts", None) else directory / CONTACTS_FILE
    return directory, key_path, contacts_path


def establish_dir(directory: Path, fix: bool) -> None:
    """Make sure the otrpipe directory exists; create it (0700) only if `fix`."""
    if directory.exists():
        return
    if not fix:
        raise SystemExit(f"The otrpipe directory ({directory}) does not exist.")
    print(f"Creating the otrpipe directory: {directory}", file=sys.stderr)
    directory.mkdir(mode=0o700, parents=True)


def load_key(path: Path) -> Ed25519PrivateKey:
    if not path.exists():
        raise SystemExit(f"The private key ({path}) does not exist.  Please use genkey.")
    with open(path, "rb") as f:
        pem = f.read()
    try:
        return crypto.load_privkey_pem(pem)
    except (ValueError, TypeError, UnsupportedAlgorithm):
        raise SystemExit(f"Invalid or corrupted private key ({path}).") from None


def load_contacts(path: Path, identity: Ed25519PrivateKey) -> Tuple[ContactStore, ContactBook]:
    """Load the contact store and add our own identity as "self"."""
    store = ContactStore(path)
    try:
        contacts = store.load()
    except ValueError as exc:
        raise SystemExit(str(exc)) from None
    contacts.set_self(crypto.fingerprint(identity.public_key()))
    return store, contacts


def parse_address(address: Optional[str], listening: bool) -> Tuple[Optional[str], int]:
    """
    "[host][:port]" -> (host, port). Listening only takes ":port"; its host
    is None (all interfaces). Connecting defaults to localhost.
    """
    if not address:
        return (None if listening else "localhost"), DEFAULT_PORT
    if listening and not address.startswith(":"):
        raise SystemExit(
            f"Can't listen on a remote address ({address}).  Specify a local port with ':port'."
        )
    host, sep, port = address.rpartition(":")
    if not sep:
        host, port = address, str(DEFAULT_PORT)
    try:
        port_num = int(port)
    except ValueError:
        raise SystemExit(f"Invalid port in address '{address}'.") from None
    if not 0 < port_num < 65536:
        raise SystemExit(f"Invalid port in address '{address}'.")
    if listening:
        return None, port_num
    return host.strip("[]") or "localhost", port_num


# -------------------------
# Commands
# -------------------------

def cmd_genkey(args: argparse.Namespace) -> None:
    """Generate a new private key. Refuses to overwrite an existing one."""
    directory, key_path, _ = resolve_paths(args)
    # Check the request makes sense before doing any work.
    establish_dir(directory, fix=True)
    if key_path.exists():
        raise SystemExit(f"Error: The private key file ({key_path}) already exists.")

    print(f"Generating a new private key ({key_path})...", file=sys.stderr)
    pem = crypto.export_privkey_pem(crypto.generate_identity())
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(pem)


def cmd_fingerprints(args: argparse.Namespace) -> None:
    """List all known contacts (including "self")."""
    directory, key_path, contacts_path = resolve_paths(args)
    establish_dir(directory, fix=False)
    identity = load_key(key_path)
    _, contacts = load_contacts(contacts_path, identity)
    for name, fingerprint in contacts.items():
        print(format_entry(name, fingerprint))


def prepare_policy(args: argparse.Namespace) -> Tuple[Ed25519PrivateKey, AuthorizationPolicy]:
    """
    Load key and contacts and validate the authorization flags.
    All of this happens before we touch the network.
    """
    directory, key_path, contacts_path = resolve_paths(args)
    establish_dir(directory, fix=False)
    identity = load_key(key_path)
    store, contacts = load_contacts(contacts_path, identity)
    config = AuthorizationConfig(anyone=args.anyone, remember=args.remember, expect=args.expect)
    policy = AuthorizationPolicy(config, contacts, store)
    policy.check()
    return identity, policy


async def converse(args: argparse.Namespace, identity: Ed25519PrivateKey,
                   policy: AuthorizationPolicy) -> Session:
    """Open the transport for `args.command` and run one conversation over it."""
    if args.command == "connect":
        conn = await transport.connect(*parse_address(args.address, listening=False))
    elif args.command == "listen":
        conn = await transport.listen(*parse_address(args.address, listening=True))
    else:
        conn = await transport.proxy(args.proxy_command)

    local = ProcessBridge(args.exec) if args.exec else StdioEndpoint()

    # ^C ends the conversation gracefully; the session only ever sees the event.
    loop = asyncio.get_running_loop()
    interrupt = asyncio.Event()
    try:
        loop.add_signal_handler(signal.SIGINT, interrupt.set)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        logger.debug("no signal handler support; ^C will not end the conversation gracefully")
        handler_installed = False

    orchestrator = ConversationOrchestrator(
        SecureConversation(identity),
        conn.reader,
        conn.sink,
        policy,
        local,
        identity=crypto.fingerprint(identity.public_key()),
        interrupt=interrupt,
    )
    try:
        return await orchestrator.run()
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
        await conn.close()


# -------------------------
# Argument parsing
# -------------------------

def _file_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument("-dir", "--dir", default=default_dir(), help="where keys and contacts are stored")
    p.add_argument("-key", "--key", help="the private key file")


def _conversation_flags(p: argparse.ArgumentParser) -> None:
    _file_flags(p)
    p.add_argument("-contacts", "--contacts", help="the contacts file")
    p.add_argument("-anyone", "--anyone", action="store_true",
                   help="converse with anyone, not just known contacts")
    p.add_argument("-remember", "--remember", metavar="NAME",
                   help="name to remember the contact by; implies -anyone")
    p.add_argument("-expect", "--expect", metavar="NAME",
                   help="contact to expect; abort if it's someone else")
    p.add_argument("-exec", "--exec", metavar="COMMAND",
                   help="run COMMAND (via /bin/sh, contact name as $1) instead of using stdin/stdout")


def build_parser() -> argparse.ArgumentParser:
    """
    Quick examples:
      otrpipe genkey
      otrpipe listen :2147 -remember bob
      otrpipe connect example.org:2147 -expect alice
      otrpipe proxy -anyone ssh example.org nc localhost 2147
    """
    p = argparse.ArgumentParser(prog="otrpipe", description="Encrypted, deniable pipe.")
    p.add_argument("-v", "--verbose", action="store_true", help="debug logging on stderr")
    sub = p.add_subparsers(dest="command", metavar="command")
    sub.required = True

    sp = sub.add_parser("connect", help="start a conversation")
    _conversation_flags(sp)
    sp.add_argument("address", nargs="?", metavar="[host][:port]")

    sp = sub.add_parser("fingerprints", help="show contacts' fingerprints")
    _file_flags(sp)
    sp.add_argument("-contacts", "--contacts", help="the contacts file")

    sp = sub.add_parser("genkey", help="create a new private key")
    _file_flags(sp)

    sp = sub.add_parser("listen", help="wait for someone to start a conversation")
    _conversation_flags(sp)
    sp.add_argument("address", nargs="?", metavar="[:port]")

    sp = sub.add_parser("proxy", help="converse over a command's stdin/stdout")
    _conversation_flags(sp)
    sp.add_argument("proxy_command", nargs=argparse.REMAINDER, metavar="command [args]")

    sp = sub.add_parser("help", help="help on each command")
    sp.add_argument("topic", nargs="?", metavar="command")

    p.set_defaults(subparsers=sub)
    return p


def parse_args(argv=None) -> argparse.Namespace:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "help":
        choices = args.subparsers.choices
        if args.topic in choices:
            choices[args.topic].print_help(sys.stderr)
        else:
            parser.print_help(sys.stderr)
        raise SystemExit(1)
    if args.command == "proxy" and not args.proxy_command:
        raise SystemExit("'proxy' needs a command to be specified.")
    return args


# -------------------------
# Main entrypoint
# -------------------------

def main(argv=None) -> None:
    """Dispatch into the chosen command; every fatal error exits 1 with one line on stderr."""
    args = parse_args(argv)
    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            stream=sys.stderr,
            format="%(asctime)s %(name)s %(levelname)s %(message)s",
        )

    try:
        if args.command == "genkey":
            cmd_genkey(args)
        elif args.command == "fingerprints":
            cmd_fingerprints(args)
        else:
            identity, policy = prepare_policy(args)
            asyncio.run(converse(args, identity, policy))
    except SessionError as exc:
        raise SystemExit(str(exc)) from None


if __name__ == "__main__":
    main()
