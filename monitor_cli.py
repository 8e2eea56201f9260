#!/usr/bin/env python3
"""
Monitor management CLI - commands for running checks and inspecting state.

Usage: python monitor_cli.py <command> [options]

Commands:
    run-once                          - Run one scheduled pass now
    check-now TARGET [CONTEXT ...]    - Manual check of one target
    regions TARGET                    - Cross-region price gaps for a target
    quota USER                        - Show a user's usage against plan caps
    abuse USER [TARGET]               - Run the abuse checks for a user
    alerts USER [LIMIT]               - Show recent alerts for a user
    engines                           - List the registered diff engines
    add-user ID PLAN [EMAIL]          - Create or update a user
    add-target ID USER NAME URL       - Add a target (plan limits apply)
    add-context ID KEY NAME [rich]    - Add a monitoring context
"""

import asyncio
import logging
import os
import sys

# Add project root to PYTHONPATH
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from watchcore import plugin_loader
from watchcore.app import MonitorApp
from watchcore.config import load_settings
from watchcore.infra.store import NotFoundError
from watchcore.models import MonitoringContext, Plan, Target, User


class Colors:
    """ANSI color codes for terminal output."""
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    BOLD = "\033[1m"
    END = "\033[0m"


SEVERITY_COLORS = {"high": Colors.RED, "medium": Colors.YELLOW, "low": Colors.BLUE}


def print_stats(stats) -> None:
    print(f"{Colors.BOLD}Queued:{Colors.END}       {stats.queued}")
    print(f"{Colors.BOLD}Processed:{Colors.END}    {stats.processed}")
    print(f"{Colors.BOLD}With changes:{Colors.END} {stats.with_changes}")
    print(f"{Colors.BOLD}With alerts:{Colors.END}  {stats.with_alerts}")
    print(f"{Colors.BOLD}Errors:{Colors.END}       {stats.errors}")
    print(f"{Colors.BOLD}Skipped:{Colors.END}      {stats.skipped}")
    if stats.throttled:
        print(f"{Colors.YELLOW}⚠️  Run stopped early by the global throttle{Colors.END}")


async def cmd_run_once(app: MonitorApp, args) -> None:
    print_stats(await app.run_once())


async def cmd_check_now(app: MonitorApp, args) -> None:
    result = await app.scheduler.check_now(args[0], args[1:] or None)
    if not result.allowed:
        print(f"{Colors.RED}❌ {result.reason}{Colors.END}")
        if result.upgrade_prompt:
            print(f"{Colors.BLUE}💡 Upgrade your plan for more manual checks{Colors.END}")
        return
    print(f"{Colors.GREEN}✅ Checked contexts: {', '.join(result.contexts) or 'none'}{Colors.END}")
    print_stats(result.stats)
    for res in result.results:
        if res.diff_result is not None:
            print(f"  - {res.diff_result.summary}")
        elif res.error:
            print(f"  - {Colors.RED}{res.code.value if res.code else 'ERROR'}: {res.error}{Colors.END}")


async def cmd_regions(app: MonitorApp, args) -> None:
    changes = await app.scheduler.compare_regions(args[0])
    if not changes:
        print(f"{Colors.GREEN}No significant regional price differences{Colors.END}")
        return
    for change in changes:
        print(f"  {SEVERITY_COLORS[change.severity.value]}●{Colors.END} {change.description}")


async def cmd_quota(app: MonitorApp, args) -> None:
    user = await app.store.get_user(args[0])
    usage = await app.store.get_usage(user.id)
    ents = app.entitlements.get(user.plan)
    active = await app.store.count_active_targets(user.id)
    print(f"{Colors.BOLD}{user.id}{Colors.END} ({user.plan.value})")
    print(f"  Targets:        {active}/{ents.max_targets}")
    print(f"  Crawls today:   {usage.crawls_today}/{ents.daily_crawl_cap}")
    print(f"  Manual checks:  {usage.manual_checks_today}/{ents.daily_manual_check_cap}")
    print(f"  Contexts/target: {ents.max_contexts_per_target} (geo-aware: {ents.can_geo_aware})")


async def cmd_abuse(app: MonitorApp, args) -> None:
    user = await app.store.get_user(args[0])
    target = await app.store.get_target(args[1]) if len(args) > 1 else None
    flags = await app.guardrail.run_all_checks(user, target)
    if not flags:
        print(f"{Colors.GREEN}✅ No abuse flags{Colors.END}")
        return
    for check in flags:
        print(f"{Colors.YELLOW}⚠️  {check.flag.kind.value} -> {check.action.value}: {check.reason}{Colors.END}")


async def cmd_alerts(app: MonitorApp, args) -> None:
    limit = int(args[1]) if len(args) > 1 else 20
    for alert in await app.store.list_alerts(args[0], limit=limit):
        color = SEVERITY_COLORS[alert.severity.value]
        print(f"{color}[{alert.severity.value.upper()}]{Colors.END} {alert.created_at:%Y-%m-%d %H:%M} {alert.title}")


async def cmd_engines(app: MonitorApp, args) -> None:
    for signal, cls in sorted(plugin_loader.list_available().items(), key=lambda kv: kv[0].value):
        print(f"  - {signal.value}: {cls.__name__}")


async def cmd_add_user(app: MonitorApp, args) -> None:
    user = User(id=args[0], plan=Plan(args[1]), email=args[2] if len(args) > 2 else None)
    await app.store.add_user(user)
    print(f"{Colors.GREEN}✅ User {user.id} ({user.plan.value}){Colors.END}")


async def cmd_add_target(app: MonitorApp, args) -> None:
    target_id, user_id, name, url = args[:4]
    user = await app.store.get_user(user_id)
    quota = app.guardrail.can_add_target(user, await app.store.count_active_targets(user.id))
    if not quota.allowed:
        print(f"{Colors.RED}❌ {quota.reason}{Colors.END}")
        return
    hoarding = await app.guardrail.detect_target_hoarding(user.id)
    if hoarding.flagged:
        print(f"{Colors.RED}❌ {hoarding.reason}{Colors.END}")
        return
    await app.store.add_target(Target(id=target_id, user_id=user.id, name=name, url=url))
    print(f"{Colors.GREEN}✅ Target {name} -> {url}{Colors.END}")


async def cmd_add_context(app: MonitorApp, args) -> None:
    contexts = await app.store.list_contexts()
    context = MonitoringContext(
        id=args[0],
        key=args[1],
        name=args[2],
        requires_rich_render=len(args) > 3 and args[3] == "rich",
        position=len(contexts),
    )
    await app.store.add_context(context)
    print(f"{Colors.GREEN}✅ Context {context.key} ({context.name}){Colors.END}")


COMMANDS = {
    "run-once": (cmd_run_once, 0),
    "check-now": (cmd_check_now, 1),
    "regions": (cmd_regions, 1),
    "quota": (cmd_quota, 1),
    "abuse": (cmd_abuse, 1),
    "alerts": (cmd_alerts, 1),
    "engines": (cmd_engines, 0),
    "add-user": (cmd_add_user, 2),
    "add-target": (cmd_add_target, 4),
    "add-context": (cmd_add_context, 3),
}


async def main(command: str, args) -> int:
    handler, min_args = COMMANDS[command]
    if len(args) < min_args:
        print(f"{Colors.RED}{command} needs at least {min_args} argument(s){Colors.END}")
        print(__doc__)
        return 1

    try:
        async with MonitorApp(load_settings()) as app:
            await handler(app, args)
    except KeyboardInterrupt:
        print(f"\n{Colors.YELLOW}Interrupted{Colors.END}")
    except NotFoundError as e:
        print(f"{Colors.RED}Not found: {e}{Colors.END}")
        return 1
    except Exception as e:
        print(f"{Colors.RED}Error: {e}{Colors.END}")
        return 1
    return 0


if __name__ == "__main__":
    if len(sys.argv) < 2 or sys.argv[1].lower() not in COMMANDS:
        print(__doc__)
        sys.exit(1)

    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s"
    )
    sys.exit(asyncio.run(main(sys.argv[1].lower(), sys.argv[2:])))
