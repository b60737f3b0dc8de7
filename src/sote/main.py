"""
SOTE - Command line front-end.

Talks to a running node over its local endpoint. ``sote start`` opens an
interactive session (login or register, then a menu); the session token
lives only in memory and the node drops it on logout or exit.
"""

import argparse
import asyncio
import sys
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.prompt import Confirm, Prompt
from rich.table import Table

from . import __version__
from .client import NodeClient
from .constants import APPROVAL_TIMEOUT, CONNECTION_TIMEOUT, DEFAULT_NODE_PORT, LOCALHOST
from .errors import SoteError
from .qr_code import render_qr_terminal
from .utils import format_timestamp, truncate_string

MENU = [
    ("1", "Show QR code"),
    ("2", "Show network address"),
    ("3", "Add contact"),
    ("4", "Pending introductions"),
    ("5", "List contacts"),
    ("6", "Send message"),
    ("7", "Fetch messages"),
    ("8", "Logout and exit"),
]
EXIT_CHOICE = "8"


class Shell:
    """Interactive menu driving a NodeClient."""

    def __init__(self, client: NodeClient, console: Optional[Console] = None):
        self.client = client
        self.console = console if console is not None else Console()
        self.username: Optional[str] = None

    async def run(self) -> None:
        if not await self.client.ping():
            self.console.print("[red]Node did not answer ping[/red]")
            return

        while self.username is None:
            choice = Prompt.ask("Do you want to (l)ogin or (r)egister?", choices=["l", "r"])
            try:
                if choice == "r":
                    await self.register()
                else:
                    await self.login()
            except SoteError as e:
                self.error(e)

        actions = {
            "1": self.show_qr,
            "2": self.show_address,
            "3": self.add_contact,
            "4": self.pending_introductions,
            "5": self.show_contacts,
            "6": self.send_message,
            "7": self.fetch_messages,
        }

        while True:
            self.print_menu()
            choice = Prompt.ask("Enter your choice", choices=[key for key, _ in MENU])
            if choice == EXIT_CHOICE:
                break
            try:
                await actions[choice]()
            except SoteError as e:
                self.error(e)

        try:
            await self.client.logout()
        except SoteError as e:
            self.error(e)
            return
        self.console.print("Logged out.")

    def print_menu(self) -> None:
        table = Table(title=f"SOTE - {self.username}", show_header=False)
        table.add_column("Key", style="cyan")
        table.add_column("Action")
        for key, label in MENU:
            table.add_row(key, label)
        self.console.print(table)

    def error(self, error: SoteError) -> None:
        self.console.print(f"[red][{error.code.value}] {error.message}[/red]")

    async def register(self) -> None:
        username = Prompt.ask("Enter username")
        password = Prompt.ask("Enter password", password=True)
        if password != Prompt.ask("Enter password again for verification", password=True):
            self.console.print("[yellow]You entered different passwords. Please try again.[/yellow]")
            return

        with self.console.status("Creating identity (this provisions a network address)..."):
            identity = await self.client.create_identity(username, password)
        self.console.print(f"Identity created. Your address: [bold]{identity['network_address']}[/bold]")
        await self._login(username, password)

    async def login(self) -> None:
        username = Prompt.ask("Enter username")
        password = Prompt.ask("Enter password", password=True)
        await self._login(username, password)

    async def _login(self, username: str, password: str) -> None:
        with self.console.status("Logging in..."):
            identity = await self.client.authenticate(username, password)
        self.username = identity["username"]
        self.console.print(f"Logged in as [bold]{self.username}[/bold] (fingerprint {identity['fingerprint']})")

    async def show_qr(self) -> None:
        address = await self.client.get_network_address(self.username)
        self.console.print(render_qr_terminal(address), highlight=False, markup=False)
        self.console.print(f"Scan to add [bold]{self.username}[/bold] at {address}")

    async def show_address(self) -> None:
        address = await self.client.get_network_address(self.username)
        self.console.print(f"Your network address: [bold]{address}[/bold]")

    async def add_contact(self) -> None:
        address = Prompt.ask("Enter the network address of the contact")
        with self.console.status("Waiting for the other side to approve..."):
            outcome = await self.client.add_contact(
                address, timeout=APPROVAL_TIMEOUT + 2 * CONNECTION_TIMEOUT
            )

        result = outcome.get("result")
        if outcome["state"] == "rejected":
            self.console.print("[yellow]Contact request was rejected[/yellow]")
        elif result == "saved":
            contact = outcome["contact"]
            self.console.print(
                f"Added [bold]{contact['contact_username']}[/bold] (fingerprint {contact['fingerprint']})"
            )
        elif result == "self_contact":
            self.console.print("[yellow]That is your own address[/yellow]")
        else:
            self.console.print("[yellow]Already in your contacts[/yellow]")

    async def pending_introductions(self) -> None:
        pending = await self.client.list_pending_introductions()
        if not pending:
            self.console.print("No pending introductions.")
            return

        for item in pending:
            self.console.print(
                f"[bold]{item['username']}[/bold] at {item['network_address']}\n"
                f"  fingerprint {item['fingerprint']}  received {format_timestamp(item['received_at'])}"
            )
            accept = Confirm.ask("Accept this contact?")
            await self.client.resolve_introduction(item["handshake_id"], accept)
            self.console.print("Accepted." if accept else "Rejected.")

    async def show_contacts(self) -> List[Dict[str, Any]]:
        contacts = await self.client.list_contacts()
        if not contacts:
            self.console.print("No contacts yet.")
            return contacts

        table = Table(title="Contacts")
        table.add_column("#", style="cyan")
        table.add_column("Username", style="bold")
        table.add_column("Address")
        table.add_column("Fingerprint")
        for index, contact in enumerate(contacts, 1):
            table.add_row(
                str(index),
                contact["contact_username"],
                truncate_string(contact["contact_network_address"], 40),
                contact["fingerprint"],
            )
        self.console.print(table)
        return contacts

    async def _select_contact(self) -> Optional[str]:
        contacts = await self.show_contacts()
        if not contacts:
            return None
        choice = Prompt.ask(
            "Enter the number of the contact",
            choices=[str(index) for index in range(1, len(contacts) + 1)],
        )
        return contacts[int(choice) - 1]["contact_username"]

    async def send_message(self) -> None:
        receiver = await self._select_contact()
        if receiver is None:
            return
        text = Prompt.ask("Enter your message")
        with self.console.status(f"Sending to {receiver}..."):
            await self.client.send_message(receiver, text)
        self.console.print("Message sent.")

    async def fetch_messages(self) -> None:
        contact = await self._select_contact()
        if contact is None:
            return

        messages = await self.client.fetch_messages(contact)
        if not messages:
            self.console.print("No messages found.")
            return

        table = Table(title=f"Messages with {contact}")
        table.add_column("Time", style="dim")
        table.add_column("From", style="bold")
        table.add_column("Message")
        for message in messages:
            if "error" in message:
                text = f"[red]<unreadable: {message['error']['message']}>[/red]"
            else:
                text = message["plaintext"]
            table.add_row(format_timestamp(message["timestamp"]), message["sender"], text)
        self.console.print(table)


async def async_main(args: argparse.Namespace) -> int:
    console = Console()
    client = NodeClient(args.host, args.port)

    try:
        async with client:
            if args.command == "ping":
                ok = await client.ping()
                console.print("pong" if ok else "[red]no answer[/red]")
                return 0 if ok else 1
            if args.command == "address":
                console.print(await client.get_network_address(args.username))
                return 0
            await Shell(client, console).run()
            return 0
    except SoteError as e:
        console.print(f"[red][{e.code.value}] {e.message}[/red]")
        return 1


def main():
    """Main entry point for the SOTE front-end."""
    parser = argparse.ArgumentParser(
        description="SOTE - decentralized peer-to-peer encrypted messaging",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sote start                 # Login or register, then use the menu
  sote address alice         # Print alice's network address
  sote --port 18081 ping     # Check a node on a custom port
        """,
    )
    parser.add_argument("--version", action="version", version=f"SOTE {__version__}")
    parser.add_argument("--host", type=str, default=LOCALHOST, help=f"Node host (default: {LOCALHOST})")
    parser.add_argument(
        "--port", type=int, default=DEFAULT_NODE_PORT, help=f"Node port (default: {DEFAULT_NODE_PORT})"
    )

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("start", help="Start an interactive session")
    subparsers.add_parser("ping", help="Check that the node is running")
    address_parser = subparsers.add_parser("address", help="Show the network address of a local identity")
    address_parser.add_argument("username")

    args = parser.parse_args()
    if args.command is None:
        args.command = "start"

    try:
        sys.exit(asyncio.run(async_main(args)))
    except KeyboardInterrupt:
        print("\nExiting...")


if __name__ == "__main__":
    main()
