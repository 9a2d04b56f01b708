#!/usr/bin/env python3
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from boxforge import __app_name__, __version__
from boxforge.core import get_context, init_context
from boxforge.core.config import CLI_LOG_FILE
from boxforge.core.errors import CompileError
from boxforge.core.logging_utils import level_from_name
from boxforge.core.logging_utils import setup_logging as setup_core_logging
from boxforge.db.plugins import PluginTrigger
from boxforge.db.profiles import load_profile_file
from boxforge.gen.generator import generate_config
from boxforge.sub.updater import SubscriptionError

logger = logging.getLogger("boxforge.cli")

LIFECYCLE_TRIGGERS = {
    PluginTrigger.ON_STARTUP: "on_startup",
    PluginTrigger.ON_READY: "on_ready",
    PluginTrigger.ON_SHUTDOWN: "on_shutdown",
    PluginTrigger.ON_CORE_STARTED: "on_core_started",
    PluginTrigger.ON_CORE_STOPPED: "on_core_stopped",
    PluginTrigger.ON_BEFORE_CORE_STOP: "on_before_core_stop",
}


def cmd_generate(args: argparse.Namespace) -> int:
    """Compile a stored profile (by id) or a profile file."""
    context = get_context()

    source = Path(args.profile)
    try:
        if source.is_file():
            profile = load_profile_file(source)
        else:
            profile = context.get_profile(args.profile)
    except (OSError, ValueError) as e:
        print(f"[ERROR] Cannot read profile: {e}")
        return 1

    if profile is None:
        print(f"[ERROR] Profile not found: {args.profile}")
        return 1

    try:
        config = asyncio.run(
            generate_config(
                profile,
                plugins=context.plugins,
                proxy_source=context.subscriptions,
                strict=context.config.strict_references or args.strict,
                script_timeout=context.config.get_plugin_timeout(),
            )
        )
    except CompileError as e:
        logger.error("Generation failed: %s", e)
        print(f"[ERROR] {e}")
        return 1

    config_json = json.dumps(config, indent=2, ensure_ascii=False)

    if args.output:
        Path(args.output).write_text(config_json, encoding="utf-8")
        print(f"[OK] Config saved to: {args.output}")
    else:
        print(config_json)

    return 0


def cmd_list(args: argparse.Namespace) -> int:
    """Show the list of profiles."""
    context = get_context()

    profiles = context.profiles.profiles
    if not profiles:
        print("No profiles")
        return 0

    current = context.config.current_profile
    for i, profile in enumerate(profiles, 1):
        marker = "*" if profile.id == current else " "
        print(f" {marker}{i}. [ID: {profile.id}] {profile.name}")
        print(
            f"      inbounds: {len(profile.inbounds)} | outbounds: {len(profile.outbounds)}"
            f" | rules: {len(profile.route.rules)}"
        )

    return 0


def cmd_subscription(args: argparse.Namespace) -> int:
    """Update one subscription."""
    context = get_context()

    try:
        proxies = asyncio.run(context.subscription_updater().update(args.sub_id))
    except KeyError:
        print(f"[ERROR] Subscription not found: {args.sub_id}")
        return 1
    except (SubscriptionError, CompileError) as e:
        print(f"[ERROR] {e}")
        return 1

    print(f"[OK] Subscription updated: {len(proxies)} proxies")
    for i, proxy in enumerate(proxies, 1):
        print(f"  {i}. [{str(proxy.get('type', '')).upper()}] {proxy.get('tag', '')}")
    return 0


def cmd_plugins(args: argparse.Namespace) -> int:
    """List plugins with their triggers."""
    context = get_context()

    plugins = context.plugins.plugins
    if not plugins:
        print("No plugins")
        return 0

    for i, plugin in enumerate(plugins, 1):
        state = "disabled" if plugin.disabled else "enabled"
        if context.plugins.get_code(plugin.id) is None:
            state += ", no code"
        print(f"  {i}. [ID: {plugin.id}] {plugin.display_name} ({state})")
        print(f"      triggers: {', '.join(plugin.triggers) or '-'}")
    return 0


def cmd_trigger(args: argparse.Namespace) -> int:
    """Fire a lifecycle trigger."""
    context = get_context()

    method = getattr(context.plugins, LIFECYCLE_TRIGGERS[args.event])
    try:
        asyncio.run(method())
    except CompileError as e:
        print(f"[ERROR] {e}")
        return 1

    print(f"[OK] {args.event} dispatched")
    return 0


def cmd_version(args: argparse.Namespace) -> int:
    """Show version information."""
    print(f"{__app_name__} {__version__}")
    return 0


def main() -> int:
    """Main entry point."""
    context = init_context()
    setup_core_logging(CLI_LOG_FILE, level=level_from_name(context.config.log_level))
    logger.info("Starting boxforge CLI, log file: %s", CLI_LOG_FILE)

    parser = argparse.ArgumentParser(
        description="boxforge - sing-box config compiler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  %(prog)s gen ID_1a2b3c4d -o config.json\n"
               "  %(prog)s gen profile.yaml\n"
               "  %(prog)s ls\n"
               "  %(prog)s sub ID_5e6f7a8b\n"
               "  %(prog)s trigger on::startup\n"
               "  %(prog)s ver",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    gen_parser = subparsers.add_parser("gen", help="Generate sing-box config")
    gen_parser.add_argument("profile", help="Profile ID or path to a profile file")
    gen_parser.add_argument("-o", "--output", help="Output file")
    gen_parser.add_argument("--strict", action="store_true", help="Fail on unresolved references")

    subparsers.add_parser("ls", help="List profiles")

    sub_parser = subparsers.add_parser("sub", help="Update subscription")
    sub_parser.add_argument("sub_id", help="Subscription ID")

    subparsers.add_parser("plugins", help="List plugins")

    trigger_parser = subparsers.add_parser("trigger", help="Fire a plugin trigger")
    trigger_parser.add_argument("event", choices=sorted(LIFECYCLE_TRIGGERS), help="Trigger")

    subparsers.add_parser("ver", help="Show version")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    commands = {
        "gen": cmd_generate,
        "ls": cmd_list,
        "sub": cmd_subscription,
        "plugins": cmd_plugins,
        "trigger": cmd_trigger,
        "ver": cmd_version,
    }

    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
