#!/usr/bin/env python3
"""Command-line utility for ODNAV."""

import argparse
import sys
import webbrowser
from pathlib import Path
from typing import Optional, List

from odnav.config import Config
from odnav.callback_server import wait_for_redirect_response
from odnav.credential_store import CredentialStore
from odnav.diagnostics import Diagnostics
from odnav.errors import (
    AuthRequired, Cancelled, InteractionAlreadyInProgress, InsufficientScope,
    NetworkError, RedirectPending, RetryBudgetExhausted, SessionError,
)
from odnav.logging_config import setup_logging
from odnav.models import DriveEntry
from odnav.navigator import RemoteFolderNavigator
from odnav.session import SessionController, SessionState, set_session_controller
from odnav.token_broker import TokenBroker


def _format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    elif size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def _print_listing(entries: List[DriveEntry], numbered: bool = False) -> None:
    if not entries:
        print("(empty)")
        return
    for index, entry in enumerate(entries, 1):
        kind = "DIR " if entry.is_folder else "FILE"
        size = "" if entry.is_folder else _format_size(entry.size)
        prefix = f"{index:3d}. " if numbered else ""
        print(f"{prefix}{kind} {entry.name:40s} {size:>10s}  {entry.id}")


def _print_recovery(reason: Optional[str]) -> None:
    """Manual recovery affordance shown instead of retrying on our own."""
    print(f"✗ OneDrive is unavailable: {reason or 'sign-in required'}")
    print("  Retry:    odnav auth        (sign in manually)")
    print("  Diagnose: odnav diagnose --repair")
    print("  Or continue without OneDrive.")


def _report_error(error: Exception) -> int:
    if isinstance(error, RetryBudgetExhausted):
        print(f"✗ {error}")
        print("  Automatic retries stopped. Run the command again to retry, or continue without OneDrive.")
    elif isinstance(error, RedirectPending):
        print("Sign-in started in the browser.")
        if error.auth_url:
            print(f"If the browser did not open, visit: {error.auth_url}")
        print("When you are redirected, run: odnav auth --response-url '<redirected address>'")
    elif isinstance(error, InteractionAlreadyInProgress):
        print(f"✗ {error}")
        print("  If no sign-in window is open, run: odnav diagnose --repair")
    elif isinstance(error, Cancelled):
        print("✗ Sign-in was cancelled")
    elif isinstance(error, AuthRequired):
        print(f"✗ {error}")
        print("  Run 'odnav auth' to sign in.")
    elif isinstance(error, InsufficientScope):
        print(f"✗ {error}")
        print("  Sign in again and grant the requested permissions: odnav auth")
    elif isinstance(error, NetworkError):
        print(f"✗ Network error: {error}")
    else:
        print(f"✗ {error}")
    return 1


def _redirect_handler(config: Config):
    """Open the browser, then collect the redirect via loopback or paste."""
    def handler(auth_url: str):
        print("Opening browser for sign-in...")
        print(f"If browser doesn't open, visit: {auth_url}")
        webbrowser.open(auth_url)
        try:
            return wait_for_redirect_response(config.redirect_uri, timeout=config.redirect_timeout)
        except (OSError, ValueError):
            pass
        if not sys.stdin.isatty():
            return None
        pasted = input("Paste the full address you were redirected to (blank to finish later): ").strip()
        return pasted or None
    return handler


def _controller(config: Config, prefer_popup: Optional[bool] = None) -> SessionController:
    def factory(store: CredentialStore) -> TokenBroker:
        broker = TokenBroker.from_config(config, store, redirect_handler=_redirect_handler(config))
        if prefer_popup is not None:
            broker.prefer_popup = prefer_popup
        return broker

    controller = SessionController(config, broker_factory=factory)
    set_session_controller(controller)
    return controller


def _open_navigator(config: Config) -> Optional[RemoteFolderNavigator]:
    controller = _controller(config)
    if controller.start() != SessionState.READY:
        _print_recovery(controller.degraded_reason)
        return None
    if controller.get_account() is None:
        _print_recovery("not signed in")
        return None
    navigator = RemoteFolderNavigator.from_config(config, controller.broker)
    controller.on_sign_out(navigator.reset)
    return navigator


def cmd_auth(args):
    """Sign in to OneDrive."""
    config = Config()

    if args.client_id:
        config.set('client_id', args.client_id)

    controller = _controller(config, prefer_popup=False if args.redirect else None)

    try:
        if args.response_url:
            state = controller.start(redirect_response=args.response_url)
            if state != SessionState.READY or controller.get_account() is None:
                _print_recovery(controller.degraded_reason)
                return 1
        else:
            controller.start()
            controller.manual_sign_in()
    except SessionError as e:
        return _report_error(e)

    account = controller.get_account()
    print(f"✓ Signed in as {account.username if account else 'unknown account'}")
    return 0


def cmd_logout(args):
    """Sign out of OneDrive."""
    config = Config()
    controller = _controller(config)
    controller.start()
    url = controller.sign_out(open_browser=not args.no_browser)
    print("✓ Signed out")
    if url and args.no_browser:
        print(f"To end the browser session too, visit: {url}")
    return 0


def cmd_status(args):
    """Show session status."""
    config = Config()
    controller = _controller(config)
    state = controller.start()

    print("OneDrive Navigator Status")
    print("=" * 40)
    print(f"Client ID: {config.client_id or '(using default)'}")
    print(f"Redirect URI: {config.redirect_uri}")
    print(f"Session: {state.value}")

    account = controller.get_account()
    if account:
        print(f"Authentication: ✓ {account.username}")
    else:
        print("Authentication: ✗ Not signed in")

    marker = controller.store.get_interaction_marker()
    if marker:
        print(f"Pending sign-in: {marker.get('mode')}")

    if state == SessionState.DEGRADED:
        _print_recovery(controller.degraded_reason)
        return 1
    return 0


def cmd_config(args):
    """Configure ODNAV."""
    config = Config()

    if args.list:
        print("Current Configuration:")
        print("=" * 40)
        for key, value in config.as_dict().items():
            if key == 'scopes':
                value = ' '.join(value)
            print(f"{key} = {value if value not in ('', None) else '(not set)'}")
        return 0

    if args.set:
        status = 0
        for item in args.set:
            if '=' not in item:
                print(f"Error: Invalid format '{item}'. Use key=value")
                status = 1
                continue

            key, value = item.split('=', 1)
            try:
                config.set(key, value)
            except ValueError as e:
                print(f"✗ {key}: {e}")
                status = 1
                continue
            print(f"✓ Set {key} = {config.get(key)}")

        return status

    print("Use --list to view config or --set key=value to change config")
    return 0


def cmd_diagnose(args):
    """Diagnose sign-in problems."""
    config = Config()
    controller = _controller(config)
    controller.start()
    diagnostics = Diagnostics(controller)

    if args.repair:
        diagnostics.repair_common_issues()
        print("✓ Cleared stale sign-in state. Run 'odnav auth' to sign in again.")

    snapshot = diagnostics.run_diagnostics(current_url=args.url, origin=args.origin)

    print("Sign-in Diagnostics")
    print("=" * 40)
    print(f"Session: {snapshot.session_state}")
    print(f"Interaction: {snapshot.interaction.state.value}")
    for key in ('current_origin', 'local_storage', 'session_storage', 'accounts', 'active_account'):
        if key in snapshot.details:
            print(f"{key}: {snapshot.details[key]}")

    if snapshot.issues:
        print("\nIssues:")
        for issue in snapshot.issues:
            print(f"  ✗ {issue}")

    print("\nRecommendations:")
    for number, hint in enumerate(snapshot.hints, 1):
        print(f"  {number}. [{hint.kind}] {hint.message}")

    return 0 if snapshot.success else 1


def cmd_ls(args):
    """List a OneDrive folder."""
    navigator = _open_navigator(Config())
    if navigator is None:
        return 1
    try:
        entries = navigator.list_folder(args.folder_id)
    except SessionError as e:
        return _report_error(e)
    _print_listing(entries)
    return 0


def cmd_mkdir(args):
    """Create a OneDrive folder."""
    navigator = _open_navigator(Config())
    if navigator is None:
        return 1
    try:
        entry = navigator.create_folder(args.name, args.parent)
    except ValueError as e:
        print(f"✗ {e}")
        return 1
    except SessionError as e:
        return _report_error(e)
    print(f"✓ Created {entry.name} ({entry.id})")
    return 0


def cmd_rename(args):
    """Rename a OneDrive folder."""
    navigator = _open_navigator(Config())
    if navigator is None:
        return 1
    try:
        entry = navigator.rename_folder(args.item_id, args.name)
    except ValueError as e:
        print(f"✗ {e}")
        return 1
    except SessionError as e:
        return _report_error(e)
    print(f"✓ Renamed to {entry.name}")
    return 0


def cmd_rm(args):
    """Delete a OneDrive folder."""
    navigator = _open_navigator(Config())
    if navigator is None:
        return 1
    try:
        navigator.current_listing = navigator.list_folder(args.parent)
        if not any(entry.id == args.item_id for entry in navigator.current_listing):
            print("Nothing to delete: item is not in that folder")
            return 0
        navigator.delete_folder(args.item_id)
    except SessionError as e:
        return _report_error(e)
    print(f"✓ Deleted {args.item_id}")
    return 0


def cmd_upload(args):
    """Upload a file to OneDrive."""
    navigator = _open_navigator(Config())
    if navigator is None:
        return 1
    try:
        entry = navigator.upload_file(Path(args.local_path).expanduser(), args.remote_path)
    except FileNotFoundError as e:
        print(f"✗ {e}")
        return 1
    except SessionError as e:
        return _report_error(e)
    print(f"✓ Uploaded {entry.name} ({_format_size(entry.size)})")
    return 0


BROWSE_HELP = """Commands:
  ls                 list current folder
  cd N|ID            enter folder by number or ID
  up                 go to parent folder
  top                go to root
  mkdir NAME         create folder here
  rename N|ID NAME   rename an entry
  rm N|ID            delete an entry
  refresh            reload current folder
  retry              retry after automatic retries stopped
  skip | quit        leave the browser"""


def _entry_at(navigator: RemoteFolderNavigator, token: str) -> DriveEntry:
    """Resolve a listing number or an item ID."""
    for entry in navigator.current_listing:
        if entry.id == token:
            return entry
    if not token.isdigit():
        raise IndexError(f"No entry with ID {token}")
    index = int(token) - 1
    if index < 0 or index >= len(navigator.current_listing):
        raise IndexError(f"No entry number {token}")
    return navigator.current_listing[index]


def _browse_step(navigator: RemoteFolderNavigator, command: str, rest: List[str]) -> bool:
    """Run one browse command. Returns False when the user leaves."""
    if command in ('quit', 'exit', 'skip', 'q'):
        return False
    if command == 'ls':
        pass
    elif command == 'cd' and rest:
        entry = _entry_at(navigator, rest[0])
        if not entry.is_folder:
            print(f"✗ {entry.name} is not a folder")
            return True
        navigator.list_children(entry.id, entry.name)
    elif command == 'up':
        navigator.navigate_up()
    elif command == 'top':
        navigator.list_root()
    elif command == 'mkdir' and rest:
        entry = navigator.create_folder(' '.join(rest))
        print(f"✓ Created {entry.name}")
    elif command == 'rename' and len(rest) >= 2:
        entry = _entry_at(navigator, rest[0])
        navigator.rename_folder(entry.id, ' '.join(rest[1:]))
    elif command == 'rm' and rest:
        entry = _entry_at(navigator, rest[0])
        navigator.delete_folder(entry.id)
        print(f"✓ Deleted {entry.name}")
    elif command == 'refresh':
        navigator.refresh()
    elif command == 'retry':
        navigator.retry()
    else:
        print(BROWSE_HELP)
        return True

    print(f"\n/{'/'.join(navigator.breadcrumbs())}")
    _print_listing(navigator.current_listing, numbered=True)
    return True


def cmd_browse(args):
    """Browse OneDrive folders interactively."""
    navigator = _open_navigator(Config())
    if navigator is None:
        return 1

    try:
        navigator.auto_fetch()
        print("/")
        _print_listing(navigator.current_listing, numbered=True)
    except RetryBudgetExhausted as e:
        _report_error(e)
        print("Type 'retry' to try again or 'skip' to continue without OneDrive.")
    except SessionError as e:
        _report_error(e)

    while True:
        try:
            line = input("odnav> ").strip()
        except EOFError:
            print()
            return 0
        if not line:
            continue
        command, *rest = line.split()
        try:
            if not _browse_step(navigator, command, rest):
                return 0
        except (ValueError, IndexError) as e:
            print(f"✗ {e}")
        except RetryBudgetExhausted as e:
            _report_error(e)
            print("Type 'retry' to try again or 'skip' to continue without OneDrive.")
        except SessionError as e:
            _report_error(e)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='OneDrive Navigator (ODNAV) - Command-line utility'
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    auth_parser = subparsers.add_parser('auth', help='Sign in to OneDrive')
    auth_parser.add_argument('--client-id', help='Custom application client ID (optional, uses built-in default if not provided)')
    auth_parser.add_argument('--redirect', action='store_true', help='Use the redirect flow instead of the popup flow')
    auth_parser.add_argument('--response-url', help='Complete a pending redirect sign-in with the redirected address')
    auth_parser.set_defaults(func=cmd_auth)

    logout_parser = subparsers.add_parser('logout', help='Sign out of OneDrive')
    logout_parser.add_argument('--no-browser', action='store_true', help='Do not open the provider sign-out page')
    logout_parser.set_defaults(func=cmd_logout)

    status_parser = subparsers.add_parser('status', help='Show session status')
    status_parser.set_defaults(func=cmd_status)

    config_parser = subparsers.add_parser('config', help='Configure ODNAV')
    config_parser.add_argument('--list', action='store_true', help='List configuration')
    config_parser.add_argument('--set', nargs='+', help='Set config (key=value)')
    config_parser.set_defaults(func=cmd_config)

    diagnose_parser = subparsers.add_parser('diagnose', help='Diagnose sign-in problems')
    diagnose_parser.add_argument('--repair', action='store_true', help='Clear stale sign-in state first')
    diagnose_parser.add_argument('--url', help='Address the provider redirected to (checked for error parameters)')
    diagnose_parser.add_argument('--origin', help='Origin the application runs at')
    diagnose_parser.set_defaults(func=cmd_diagnose)

    ls_parser = subparsers.add_parser('ls', help='List a folder')
    ls_parser.add_argument('folder_id', nargs='?', help='Folder ID (default: root)')
    ls_parser.set_defaults(func=cmd_ls)

    mkdir_parser = subparsers.add_parser('mkdir', help='Create a folder')
    mkdir_parser.add_argument('name', help='Folder name')
    mkdir_parser.add_argument('--parent', help='Parent folder ID (default: root)')
    mkdir_parser.set_defaults(func=cmd_mkdir)

    rename_parser = subparsers.add_parser('rename', help='Rename a folder')
    rename_parser.add_argument('item_id', help='Folder ID')
    rename_parser.add_argument('name', help='New name')
    rename_parser.set_defaults(func=cmd_rename)

    rm_parser = subparsers.add_parser('rm', help='Delete a folder')
    rm_parser.add_argument('item_id', help='Folder ID')
    rm_parser.add_argument('--parent', help='Parent folder ID (default: root)')
    rm_parser.set_defaults(func=cmd_rm)

    upload_parser = subparsers.add_parser('upload', help='Upload a file')
    upload_parser.add_argument('local_path', help='Local file')
    upload_parser.add_argument('remote_path', help='Destination path relative to the drive root')
    upload_parser.set_defaults(func=cmd_upload)

    browse_parser = subparsers.add_parser('browse', help='Browse folders interactively')
    browse_parser.set_defaults(func=cmd_browse)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    config = Config()
    setup_logging(level=config.log_level, log_file=config.log_path)
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
