from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from pathlib import Path

from omniproxy import oauth
from omniproxy.accounts import AccountRegistry
from omniproxy.catalog import ModelCatalog
from omniproxy.errors import OAuthError, StateError
from omniproxy.providers import Provider
from omniproxy.settings import Settings, get_settings
from omniproxy.store import AccountStore

EXPIRING_SOON_SECONDS = 600

PROVIDER_TITLES = {
    Provider.CODEX: "Codex (OpenAI)",
    Provider.CLAUDE: "Claude (Anthropic)",
    Provider.GEMINI: "Gemini (Google)",
}


@dataclass
class CliContext:
    settings: Settings
    store: AccountStore
    registry: AccountRegistry
    models_path: Path


def _parse_account_id(value: str) -> tuple[Provider, str]:
    parts = value.split(":")
    if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
        raise ValueError("Invalid ID format. Use: provider:name")
    return Provider.parse(parts[0]), parts[1].strip()


def _next_free_name(registry: AccountRegistry, provider: Provider) -> str:
    index = 1
    while registry.get(provider, f"{provider.value}-{index}") is not None:
        index += 1
    return f"{provider.value}-{index}"


def cmd_account_add(args: argparse.Namespace, context: CliContext) -> str:
    provider = Provider.parse(args.provider)
    name = (args.name or "").strip() or _next_free_name(context.registry, provider)
    if context.registry.get(provider, name) is not None:
        raise ValueError(f"Account already exists: {provider.value}:{name}")

    print(f"Adding {provider.value} account: {name}")
    credentials = oauth.login(
        provider,
        settings=context.settings,
        open_browser=not args.no_browser,
        manual_code=args.manual_code,
        timeout_seconds=args.timeout_seconds,
    )
    account = context.registry.add(provider, name, credentials)
    if credentials.account_id:
        return f"Account added: {account.label} (account_id: {credentials.account_id})"
    return f"Account added: {account.label}"


def cmd_account_list(_: argparse.Namespace, context: CliContext) -> str:
    if context.registry.is_empty():
        return "No accounts configured.\nAdd one with: omniproxy account add <provider>"

    lines: list[str] = []
    for provider in Provider:
        accounts = context.registry.list(provider)
        if not accounts:
            continue
        lines.append(f"{provider.value}:")
        for account in accounts:
            status = "✓" if account.is_valid() else "✗"
            line = f"  {status} {account.name} (expires: {account.expires_at_display()})"
            if account.is_valid() and account.credentials.expires_within(EXPIRING_SOON_SECONDS):
                line += f" - expiring soon, run: omniproxy account refresh {account.label}"
            lines.append(line)
    return "\n".join(lines)


def cmd_account_remove(args: argparse.Namespace, context: CliContext) -> str:
    provider, name = _parse_account_id(args.id)
    context.registry.remove(provider, name)
    return f"Account removed: {provider.value}:{name}"


def cmd_account_refresh(args: argparse.Namespace, context: CliContext) -> str:
    provider, name = _parse_account_id(args.id)
    account = context.registry.get(provider, name)
    if account is None:
        raise ValueError(f"Account not found: {provider.value}:{name}")
    credentials = oauth.refresh_credentials(
        provider, account.credentials.refresh_token, settings=context.settings
    )
    updated = context.registry.update_credentials(provider, name, credentials)
    return f"Account refreshed: {updated.label} (expires: {updated.expires_at_display()})"


def cmd_models(args: argparse.Namespace, context: CliContext) -> str:
    if args.refresh:
        print("Refreshing model list...")
        catalog = ModelCatalog.refresh(context.models_path)
    else:
        catalog = ModelCatalog.load(context.models_path)

    lines = ["Available models:"]
    for provider in Provider:
        lines.append("")
        lines.append(f"{PROVIDER_TITLES[provider]}:")
        for model in catalog.models_for(provider):
            lines.append(f"  - {model.name}")
            if model.reasoning_levels:
                lines.append(f"    reasoning: {', '.join(model.reasoning_levels)}")
    return "\n".join(lines)


def cmd_serve(args: argparse.Namespace, context: CliContext) -> str:
    if context.registry.is_empty():
        raise ValueError(
            "No accounts configured. Add one with: omniproxy account add <provider>"
        )
    from omniproxy import main as gateway

    # The app reads its own settings on startup; point it at the same files.
    os.environ["ACCOUNTS_PATH"] = str(context.store.path)
    os.environ["MODELS_PATH"] = str(context.models_path)
    get_settings.cache_clear()

    host = args.host or context.settings.host
    port = args.port or context.settings.port
    print(f"OmniProxy starting on http://{host}:{port}")
    print("Press Ctrl+C to stop\n")
    gateway.run(host=host, port=port)
    return "OmniProxy stopped."


class OmniproxyCliParserBuilder:
    def __init__(self) -> None:
        self._parser = argparse.ArgumentParser(
            prog="omniproxy",
            description="Manage subscription accounts and run the OmniProxy gateway.",
        )
        self._parser.add_argument(
            "--accounts-path", help="Path to accounts YAML (default: ~/.omniproxy/accounts.yaml)."
        )
        self._parser.add_argument(
            "--models-path", help="Path to models YAML (default: ~/.omniproxy/models.yaml)."
        )
        self._subparsers = self._parser.add_subparsers(dest="command", required=True)

    def build(self) -> argparse.ArgumentParser:
        self._build_account()
        self._build_models()
        self._build_serve()
        return self._parser

    def _build_account(self) -> None:
        account = self._subparsers.add_parser("account", help="Manage provider accounts.")
        actions = account.add_subparsers(dest="action", required=True)

        add = actions.add_parser("add", help="Log in to a provider and store the account.")
        add.add_argument("provider", help="codex, claude or gemini (aliases accepted).")
        add.add_argument("--name")
        add.add_argument("--no-browser", action="store_true")
        add.add_argument(
            "--manual-code",
            help="Authorization code, code#state or full redirect URL; skips the callback wait.",
        )
        add.add_argument(
            "--timeout-seconds", type=int, default=oauth.DEFAULT_LOGIN_TIMEOUT_SECONDS
        )
        add.set_defaults(handler=cmd_account_add, mutates=True)

        listing = actions.add_parser("list", help="List configured accounts.")
        listing.set_defaults(handler=cmd_account_list, mutates=False)

        remove = actions.add_parser("remove", help="Remove an account.")
        remove.add_argument("id", help="Account id as provider:name.")
        remove.set_defaults(handler=cmd_account_remove, mutates=True)

        refresh = actions.add_parser("refresh", help="Refresh an account's OAuth tokens.")
        refresh.add_argument("id", help="Account id as provider:name.")
        refresh.set_defaults(handler=cmd_account_refresh, mutates=True)

    def _build_models(self) -> None:
        parser = self._subparsers.add_parser("models", help="Show the model catalog.")
        parser.add_argument(
            "--refresh", action="store_true", help="Rewrite the catalog file."
        )
        parser.set_defaults(handler=cmd_models, mutates=False)

    def _build_serve(self) -> None:
        parser = self._subparsers.add_parser("serve", help="Run the HTTP gateway.")
        parser.add_argument("--host")
        parser.add_argument("--port", type=int)
        parser.set_defaults(handler=cmd_serve, mutates=False)


def _build_parser() -> argparse.ArgumentParser:
    return OmniproxyCliParserBuilder().build()


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()
    store = AccountStore(args.accounts_path or settings.resolved_accounts_path)
    models_path = Path(args.models_path or settings.resolved_models_path).expanduser()

    try:
        context = CliContext(
            settings=settings,
            store=store,
            registry=store.load_registry(),
            models_path=models_path,
        )
        result = args.handler(args, context)
        if getattr(args, "mutates", False):
            store.save(context.registry.snapshot())
    except (StateError, OAuthError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(result)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
