#!/usr/bin/env python3
"""
U2F Demo Application

A shell-based U2F client for a relying party serving the U2F demo endpoints.
It demonstrates:
- Token enrollment (registration and re-registration)
- Authentication (signing) with any of several registered tokens
- Listing and removing registered tokens
- Talking to a local security key directly, or handing requests to an
  external handler through the u2f:// URL scheme

Requires a U2F compatible authenticator (e.g., YubiKey, SoloKey) for the
direct mode.

Note: Uses http://localhost:8080 as relying party by default. Set U2F_DEMO_URL
to point at another server.
"""

import asyncio
import logging
import os
import sys
from datetime import datetime

from fido2.hid import CtapHidDevice

from .ceremony import DEFAULT_TIMEOUT_SECONDS, CeremonyListener, CeremonyOrchestrator
from .correlator import RequestCorrelator
from .errors import TransportError
from .gateway import DirectGateway, IndirectGateway, select_gateway
from .relying_party import HttpRelyingParty

# Configuration
RP_URL = os.environ.get("U2F_DEMO_URL", "http://localhost:8080")
FORCE_INDIRECT = os.environ.get("U2F_DEMO_INDIRECT", "") == "1"
LOG_LEVEL = os.environ.get("U2F_DEMO_LOG_LEVEL", "WARNING")


def format_enrollment_time(value):
    """Render an enrollment time given in milliseconds since the epoch."""
    try:
        return datetime.fromtimestamp(int(value) / 1000).strftime("%Y-%m-%d %H:%M:%S")
    except (TypeError, ValueError, OverflowError, OSError):
        return str(value)


def print_token(token):
    """Print a token record as a card."""
    transports = token.get("transports")
    print(f"\n  Issuer: {token.get('issuer')}")
    print(f"  Enrolled: {format_enrollment_time(token.get('enrollment_time'))}")
    print(f"  Transports: {transports if transports is not None else 'None specified'}")
    print(f"  Key Handle: {token.get('key_handle')}")
    print(f"  Public Key: {token.get('public_key')}")


class ConsoleListener(CeremonyListener):
    """Render ceremony events in the terminal."""

    def show_message(self, message):
        print("\n" + "=" * 50)
        print(f"  >>> {message.upper()} <<<")
        print("=" * 50 + "\n")

    def show_error(self, failure):
        print(f"\nERROR: {failure.message}")

    def add_token(self, token):
        print("\n" + "=" * 50)
        print("  REGISTRATION SUCCESSFUL!")
        print("=" * 50)
        print_token(token)
        print("=" * 50)

    def highlight_token(self, token):
        print("\n" + "=" * 50)
        print("  AUTHENTICATION SUCCESSFUL!")
        print("=" * 50)
        print(f"  Authenticated with: {token.get('public_key')}")
        print("=" * 50)


def get_device():
    """Detect and return a U2F device, or None when there is none."""
    print("\nSearching for U2F devices...")
    devices = list(CtapHidDevice.list_devices())

    if not devices:
        print("\nNo U2F device found, requests will go to the u2f:// handler.")
        return None

    if len(devices) == 1:
        print(f"Found device: {devices[0]}")
        return devices[0]

    print(f"\nFound {len(devices)} devices:")
    for i, dev in enumerate(devices):
        print(f"  [{i + 1}] {dev}")

    while True:
        try:
            choice = int(input("\nSelect device number: ")) - 1
            if 0 <= choice < len(devices):
                return devices[choice]
            print("Invalid selection.")
        except ValueError:
            print("Please enter a number.")


async def prompt(text):
    return (await asyncio.to_thread(input, text)).strip()


async def list_tokens(relying_party):
    """List all registered tokens."""
    print("\n" + "-" * 50)
    print("REGISTERED TOKENS")
    print("-" * 50)

    try:
        tokens = await relying_party.get_tokens()
    except TransportError as e:
        print(f"\nCouldn't fetch tokens: {e}")
        return []

    if not tokens:
        print("\nNo tokens registered yet.")
        return []

    for i, token in enumerate(tokens, 1):
        print(f"\n  [{i}]", end="")
        print_token(token)
    return tokens


async def remove_token(relying_party):
    """Remove a registered token."""
    tokens = await list_tokens(relying_party)
    if not tokens:
        return

    choice = await prompt("\nSelect token to remove: ")
    try:
        idx = int(choice) - 1
    except ValueError:
        print("Invalid selection.")
        return
    if not 0 <= idx < len(tokens):
        print("Invalid selection.")
        return

    public_key = tokens[idx].get("public_key")
    try:
        await relying_party.remove_token(public_key)
    except TransportError as e:
        print(f"\ncouldn't remove token: {e}")
        return
    print(f"\nToken {public_key} removed.")


async def deliver_response(gateway):
    """Hand a response from the u2f:// handler back to its pending request."""
    if not isinstance(gateway, IndirectGateway):
        print("\nThe direct gateway does not take external responses.")
        return
    text = await prompt("Paste the handler response (JSON or callback URL): ")
    try:
        accepted = gateway.deliver(text)
    except ValueError as e:
        print(f"\nCould not parse response: {e}")
        return
    if not accepted:
        print("\nNo pending request matches this response, ignored.")


def main_menu():
    """Display main menu."""
    print("\n" + "=" * 50)
    print("       U2F DEMO APPLICATION")
    print("=" * 50)
    print("\n  [1] Authenticate")
    print("  [2] Register Token")
    print("  [3] Re-register Token")
    print("  [4] List Registered Tokens")
    print("  [5] Remove Token")
    print("  [6] Deliver Handler Response (u2f:// mode)")
    print("  [9] Rescan for Devices")
    print("  [0] Exit")
    print("\n" + "-" * 50)


async def run(relying_party, gateway, listener=None):
    """Menu loop."""
    orchestrator = CeremonyOrchestrator(
        relying_party, gateway, listener or ConsoleListener(), DEFAULT_TIMEOUT_SECONDS
    )
    pending = set()

    def start(coro):
        # Ceremonies in u2f:// mode only finish once a response is delivered,
        # so they run in the background while the menu stays responsive.
        task = asyncio.create_task(coro)
        pending.add(task)
        task.add_done_callback(pending.discard)
        return task

    while True:
        main_menu()
        choice = await prompt("Select option: ")

        if choice == "1":
            task = start(orchestrator.authenticate())
        elif choice in ("2", "3"):
            task = start(orchestrator.enroll(reregistration=choice == "3"))
        elif choice == "4":
            await list_tokens(relying_party)
            continue
        elif choice == "5":
            await remove_token(relying_party)
            continue
        elif choice == "6":
            await deliver_response(gateway)
            await asyncio.sleep(0)
            continue
        elif choice == "9":
            device = get_device()
            if device:
                gateway = DirectGateway(gateway.correlator, device, RP_URL)
                orchestrator.gateway = gateway
                print("Device updated successfully.")
            continue
        elif choice == "0":
            print("\nGoodbye!")
            break
        else:
            print("\nInvalid option. Please try again.")
            continue

        if isinstance(gateway, DirectGateway):
            await task

    for task in pending:
        task.cancel()


async def amain():
    relying_party = HttpRelyingParty(RP_URL)
    correlator = RequestCorrelator()
    device = None if FORCE_INDIRECT else get_device()
    gateway = select_gateway(correlator, RP_URL, device=device, force_indirect=device is None)
    print(f"\n>>> Relying party: {RP_URL}")
    try:
        await run(relying_party, gateway)
    finally:
        await relying_party.close()


def main():
    """Main application entry point."""
    logging.basicConfig(
        level=LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print("\n" + "#" * 50)
    print("#" + " " * 48 + "#")
    print("#        U2F DEMO - Security Key Demo           #")
    print("#" + " " * 48 + "#")
    print("#" * 50)

    try:
        asyncio.run(amain())
    except KeyboardInterrupt:
        print("\n\nInterrupted by user.")
        sys.exit(0)


if __name__ == "__main__":
    main()
