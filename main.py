"""
MRAG Connect — add-source entry point.

A minimal line-oriented front end for the add-source wizard: it prints the
current step, its options and the last error, and turns each input line
into a wizard event.  ``b`` goes back, ``q`` cancels.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Dict

from config.settings import config
from connectors.registry import ConnectorRegistry, ProviderRegistry
from core.provisioner import CredentialProvisioner
from core.wizard import AddSourceWizard
from core.wizard_state import (
    AuthMethodChosen,
    Back,
    Cancel,
    ConfigSubmitted,
    ConnectorChosen,
    CredentialsSubmitted,
    ExistingAuthChosen,
    WizardStep,
)
from database.session import init_db
from database.stores import AuthProviderStore, CredentialsStore, SourceStore
from utils.schemas import AuthMethod

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "uvicorn", "aiosqlite"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


async def _ask(prompt: str) -> str:
    return (await asyncio.to_thread(input, prompt)).strip()


def _print_options(options) -> None:
    for i, option in enumerate(options, start=1):
        print(f"  {i}. {option}")


async def _choice(prompt: str):
    """Return a zero-based index, Back(), Cancel() or None on bad input."""
    answer = await _ask(prompt)
    if answer.lower() == "b":
        return Back()
    if answer.lower() == "q":
        return Cancel()
    if answer.isdigit():
        return int(answer) - 1
    return None


async def _next_event(wizard: AddSourceWizard):
    step = wizard.step

    if step == WizardStep.SELECT_CONNECTOR:
        print("\nSelect a connector:")
        _print_options(wizard.connector_options())
        picked = await _choice("> ")
        return ConnectorChosen(index=picked) if isinstance(picked, int) else picked

    if step == WizardStep.ENTER_CONFIG:
        print(f"\nConfigure {wizard.connector.name} (blank keeps the default):")
        values: Dict[str, str] = {}
        for key in wizard.connector.config_keys:
            suffix = f" [{key.default}]" if key.default else (" (required)" if key.required else "")
            answer = await _ask(f"  {key.label}{suffix}: ")
            if answer.lower() == "b":
                return Back()
            if answer.lower() == "q":
                return Cancel()
            values[key.key] = answer
        return ConfigSubmitted(values=values)

    if step == WizardStep.SELECT_AUTH_METHOD:
        print("\nAuthentication method:")
        _print_options("Personal Access Token" if m == AuthMethod.PAT else "OAuth App"
                       for m in wizard.auth_method_options())
        picked = await _choice("> ")
        return AuthMethodChosen(index=picked) if isinstance(picked, int) else picked

    if step == WizardStep.SELECT_EXISTING_AUTH:
        print("\nSelect an existing OAuth app or create a new one:")
        _print_options(wizard.existing_auth_options())
        picked = await _choice("> ")
        return ExistingAuthChosen(index=picked) if isinstance(picked, int) else picked

    if step == WizardStep.OAUTH_IN_FLIGHT:
        picked = await _choice("  b=back to credentials, q=cancel: ")
        return picked if isinstance(picked, (Back, Cancel)) else None

    if step == WizardStep.ENTER_CREDENTIALS:
        hint = wizard.setup_hint()
        if hint:
            print(f"\n{hint}")
        if wizard.auth_method == AuthMethod.PAT:
            token = await _ask("  Token (b=back, q=cancel): ")
            if token in ("b", "q"):
                return Back() if token == "b" else Cancel()
            return CredentialsSubmitted(token=token)
        client_id = await _ask("  Client ID (b=back, q=cancel): ")
        if client_id in ("b", "q"):
            return Back() if client_id == "b" else Cancel()
        client_secret = await _ask("  Client Secret: ")
        return CredentialsSubmitted(client_id=client_id, client_secret=client_secret)

    return None


async def run_wizard() -> int:
    await init_db()
    connectors = ConnectorRegistry()
    wizard = AddSourceWizard(
        connectors,
        ProviderRegistry(connectors),
        CredentialProvisioner(SourceStore(), CredentialsStore()),
        AuthProviderStore(),
    )

    try:
        while not wizard.finished:
            if wizard.step == WizardStep.OAUTH_IN_FLIGHT and wizard.awaiting_callback:
                print(f"\nAuthorize in your browser:\n  {wizard.flow.auth_url}")
                print("Waiting for the callback… (Ctrl-C to quit)")
                await wizard.wait_for_oauth()
            else:
                event = await _next_event(wizard)
                if event is None:
                    print("  invalid input")
                    continue
                await wizard.dispatch(event)

            if wizard.error:
                print(f"  error: {wizard.error}")
    finally:
        await wizard.close()

    for warning in wizard.warnings:
        print(f"  warning: {warning}")

    if wizard.step == WizardStep.COMPLETE:
        result = wizard.result
        account = result.credentials.account_identifier if result.credentials else ""
        print(f"\nSource added: {result.source.display_name(account)}")
        return 0
    print("\nCancelled.")
    return 1


def main() -> int:
    try:
        return asyncio.run(run_wizard())
    except KeyboardInterrupt:
        # run_wizard has already stopped the callback listener on its way out.
        print("\nCancelled.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
