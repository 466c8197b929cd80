#!/usr/bin/env python3
"""
Darwin CLI Tool
===============

Command-line interface for the evolution pipeline.

Usage:
    darwin-cli analyze TRACES [--save] [--project-dir PATH]
    darwin-cli trigger --cost X [--task TEXT] [--project-dir PATH]
    darwin-cli auto-apply PATH [PATH ...] [--project-dir PATH]
    darwin-cli heal status [--project-dir PATH]
    darwin-cli heal evaluate APPLICATION_ID
    darwin-cli heal rollback APPLICATION_ID --reason TEXT
    darwin-cli heal run
    darwin-cli heal cleanup
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from darwinforge.automation import (
    AutomationGate,
    AutomationStateStore,
    HistoryItem,
    ProposalChange,
    TokenUsage,
    requires_human_approval,
)
from darwinforge.config import ConfigValidationError, DarwinSettings
from darwinforge.db import Database
from darwinforge.output import (
    console,
    create_table,
    icon,
    print_error,
    print_header,
    print_info,
    print_key_value_table,
    print_muted,
    print_subheader,
    print_success,
    print_table,
    print_warning,
    risk_style,
    setup_rich_logging,
    spinner,
)
from darwinforge.pattern_detector import PatternDetector
from darwinforge.proposal_generator import ProposalGenerator
from darwinforge.proposals import ProposalStore
from darwinforge.self_healing import SelfHealingError, SelfHealingMonitor, create_self_healing_monitor
from darwinforge.traces import SignalStore, TraceParseError, load_traces


def get_project_dir(args) -> Path:
    """Get project directory from args or current directory."""
    if getattr(args, "project_dir", None):
        return Path(args.project_dir)
    return Path.cwd()


# =============================================================================
# analyze
# =============================================================================

def cmd_analyze(args, settings: DarwinSettings) -> int:
    """Detect signals in a trace export and generate proposals."""
    with spinner(f"Loading traces from {args.traces}..."):
        traces = load_traces(Path(args.traces))

    if not traces:
        print_warning("No valid trace events found")
        return 0

    now_ms = args.now_ms if args.now_ms is not None else max(t.timestamp for t in traces)
    detector = PatternDetector(settings.darwin)
    signals = detector.analyze_traces(traces, now_ms=now_ms)
    proposals = ProposalGenerator(settings.darwin).generate_from_signals(signals, now_ms=now_ms)

    print_header("Trace Analysis")
    print_key_value_table({
        "Trace events": len(traces),
        "Signals": len(signals),
        "Proposals": len(proposals),
    })

    if signals:
        print_subheader("Signals")
        table = create_table(columns=["Type", "Confidence", "Description"])
        for signal in signals:
            table.add_row(signal.type.value, f"[df.number]{signal.confidence:.2f}[/]", signal.description)
        print_table(table)

    if proposals:
        print_subheader("Proposals")
        table = create_table(columns=["Type", "Risk", "Title"])
        for proposal in proposals:
            risk = proposal.risk.value
            table.add_row(proposal.type.value, f"[{risk_style(risk)}]{risk}[/]", proposal.title)
        print_table(table)

    if args.save:
        async def save() -> int:
            async with Database(get_project_dir(args)) as db:
                async with db.session() as session:
                    added = await SignalStore(session).save_all(signals)
                    await ProposalStore(session).save_all(proposals)
            return added

        added = asyncio.run(save())
        print_success(f"Saved {added} new signal(s) and {len(proposals)} proposal(s)")

    return 0


# =============================================================================
# trigger / auto-apply
# =============================================================================

def cmd_trigger(args, settings: DarwinSettings) -> int:
    """Evaluate whether a finished task should trigger an automated run."""
    async def run():
        async with Database(get_project_dir(args)) as db:
            async with db.session() as session:
                gate = AutomationGate(settings.automation, AutomationStateStore(session))
                history = HistoryItem(task=args.task) if args.task else None
                return await gate.begin_run(TokenUsage(total_cost=args.cost), history)

    result = asyncio.run(run())

    print_header("Automation Trigger")
    print_key_value_table({
        "Level": f"{int(settings.automation.level)} ({settings.automation.level.name})",
        "Triggered": result.triggered,
        "Reason": result.reason.value,
        "Details": result.details or "-",
    })

    if result.rate_limited:
        print_warning(f"Rate limited: {result.rate_limit_reason}")
    elif result.triggered:
        print_success("Run allowed")
    else:
        print_muted("No trigger conditions met")
    return 0


def cmd_auto_apply(args, settings: DarwinSettings) -> int:
    """Check whether a set of changed paths could be applied without review."""
    changes = [ProposalChange(path=p) for p in args.paths]
    evaluation = AutomationGate(settings.automation).evaluate_changes(changes)

    print_header("Auto-Apply Check")
    table = create_table(columns=["Path", "Category", "Safe"])
    for change in evaluation.safe_changes:
        table.add_row(f"[df.path]{change.path}[/]", change.category.value, f"[df.ok]{icon('check')}[/]")
    for change in evaluation.unsafe_changes:
        note = "human approval" if requires_human_approval(change.path) else "-"
        table.add_row(f"[df.path]{change.path}[/]", note, f"[df.err]{icon('cross')}[/]")
    print_table(table)

    if evaluation.can_auto_apply:
        print_success(evaluation.reason)
        return 0
    print_warning(evaluation.reason)
    return 1


# =============================================================================
# heal
# =============================================================================

async def _with_monitor(args, settings: DarwinSettings, action):
    async with Database(get_project_dir(args)) as db:
        async with db.session() as session:
            monitor = await create_self_healing_monitor(get_project_dir(args), session, settings.self_healing)
            return await action(monitor)


def cmd_heal_status(args, settings: DarwinSettings) -> int:
    async def action(monitor: SelfHealingMonitor):
        return monitor.get_applications(), monitor.get_rollback_log()

    applications, rollback_log = asyncio.run(_with_monitor(args, settings, action))

    print_header("Self-Healing Status")
    if not applications:
        print_info("No applications recorded")
        return 0

    table = create_table(columns=["ID", "Proposal", "Status", "Applied", "Files"])
    for app in applications:
        status_style = "df.err" if app.rolled_back else "df.ok"
        table.add_row(
            app.id,
            app.proposal_id,
            f"[{status_style}]{app.status}[/]",
            f"[df.timestamp]{app.applied_at[:19]}[/]",
            str(len(app.changed_files)),
        )
    print_table(table)

    if rollback_log:
        print_subheader("Rollback Log")
        table = create_table(columns=["Time", "Application", "Result", "Automatic", "Reason"])
        for entry in rollback_log:
            table.add_row(entry.timestamp[:19], entry.application_id, entry.result,
                          "yes" if entry.automatic else "no", entry.reason)
        print_table(table)
    return 0


def cmd_heal_evaluate(args, settings: DarwinSettings) -> int:
    async def action(monitor: SelfHealingMonitor):
        return await monitor.evaluate_application(args.application_id)

    result = asyncio.run(_with_monitor(args, settings, action))
    if result is None:
        print_info("Not enough data to evaluate yet")
        return 0

    print_header(f"Evaluation {args.application_id}")
    print_key_value_table({
        "Degraded": result.degraded,
        "Severity": f"{result.severity:g}/100",
        "Recommendation": result.recommendation,
    })
    for metric in result.degraded_metrics:
        console.print(f"  [df.warn]{icon('bullet')}[/] {metric.name}: "
                      f"{metric.before:g} {icon('arrow_right')} {metric.after:g} "
                      f"([df.number]{metric.change_percent:+.1f}[/])")
    print_muted(result.explanation)
    return 0


def cmd_heal_rollback(args, settings: DarwinSettings) -> int:
    async def action(monitor: SelfHealingMonitor):
        return await monitor.rollback(args.application_id, args.reason, triggered_by="cli")

    with spinner("Restoring files..."):
        rollback = asyncio.run(_with_monitor(args, settings, action))

    if rollback.result == "success":
        print_success(f"Rolled back {args.application_id} ({len(rollback.restored_files)} file(s) restored)")
        return 0
    print_warning(f"Rollback {rollback.result}: {rollback.error}")
    return 1


def cmd_heal_run(args, settings: DarwinSettings) -> int:
    async def action(monitor: SelfHealingMonitor):
        return await monitor.run_auto_heal()

    with spinner("Evaluating applications..."):
        actions = asyncio.run(_with_monitor(args, settings, action))

    if not actions:
        print_info("No rollbacks needed")
        return 0
    for rollback in actions:
        console.print(f"[df.warn]{icon('undo')}[/] {rollback.application_id}: {rollback.reason}")
    print_success(f"{len(actions)} application(s) rolled back")
    return 0


def cmd_heal_cleanup(args, settings: DarwinSettings) -> int:
    async def action(monitor: SelfHealingMonitor):
        return await monitor.cleanup_old_backups()

    removed = asyncio.run(_with_monitor(args, settings, action))
    print_success(f"Removed {removed} backup director{'y' if removed == 1 else 'ies'}")
    return 0


# =============================================================================
# Entry point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="darwin-cli",
        description="Detect patterns in agent traces, gate automation and self-heal applied changes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory containing the .darwin folder (default: current dir)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    analyze_parser = subparsers.add_parser("analyze", help="Analyze a trace export")
    analyze_parser.add_argument("traces", help="JSON or JSON-lines trace export")
    analyze_parser.add_argument("--save", action="store_true", help="Persist signals and proposals")
    analyze_parser.add_argument("--now-ms", type=int, default=None,
                                help="Analysis time in epoch ms (default: newest trace)")

    trigger_parser = subparsers.add_parser("trigger", help="Evaluate automation trigger for a task")
    trigger_parser.add_argument("--cost", type=float, required=True, help="Total task cost")
    trigger_parser.add_argument("--task", help="Task title or summary")

    apply_parser = subparsers.add_parser("auto-apply", help="Check whether paths may be auto-applied")
    apply_parser.add_argument("paths", nargs="+", help="Changed file paths")

    heal_parser = subparsers.add_parser("heal", help="Self-healing monitor")
    heal_sub = heal_parser.add_subparsers(dest="heal_command", help="Heal command")
    heal_sub.add_parser("status", help="List monitored applications")
    evaluate_parser = heal_sub.add_parser("evaluate", help="Evaluate one application")
    evaluate_parser.add_argument("application_id")
    rollback_parser = heal_sub.add_parser("rollback", help="Manually roll back an application")
    rollback_parser.add_argument("application_id")
    rollback_parser.add_argument("--reason", required=True, help="Why the change is rolled back")
    heal_sub.add_parser("run", help="Evaluate all applications and roll back degraded ones")
    heal_sub.add_parser("cleanup", help="Delete old backups of rolled-back applications")

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_rich_logging(logging.DEBUG if args.verbose else logging.WARNING)

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "analyze": cmd_analyze,
        "trigger": cmd_trigger,
        "auto-apply": cmd_auto_apply,
    }
    heal_commands = {
        "status": cmd_heal_status,
        "evaluate": cmd_heal_evaluate,
        "rollback": cmd_heal_rollback,
        "run": cmd_heal_run,
        "cleanup": cmd_heal_cleanup,
    }

    if args.command == "heal":
        handler = heal_commands.get(args.heal_command)
    else:
        handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    try:
        settings = DarwinSettings.load(get_project_dir(args))
        return handler(args, settings)
    except ConfigValidationError as e:
        print_error(f"Invalid configuration: {e}")
        return 2
    except (TraceParseError, FileNotFoundError) as e:
        print_error(str(e))
        return 2
    except SelfHealingError as e:
        print_error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
