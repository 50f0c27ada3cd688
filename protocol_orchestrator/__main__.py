"""Entry point for Protocol Orchestrator CLI."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from protocol_orchestrator.cli_adapters.command import CommandAgentRunner
from protocol_orchestrator.config.settings import Settings, get_settings, load_settings_from_yaml
from protocol_orchestrator.core.errors import PersistenceError, SchemaError
from protocol_orchestrator.core.executor import PhaseExecutor
from protocol_orchestrator.core.protocol_loader import load_protocol
from protocol_orchestrator.core.run_state import RunState, RunStatus
from protocol_orchestrator.core.side_effects import GitSideEffects, NullSideEffects, SideEffects
from protocol_orchestrator.core.state_manager import RunStateStore, new_run_id
from protocol_orchestrator.core.verification import VerificationRunner
from protocol_orchestrator.human_loop.gate_controller import (
    DecisionSource,
    FileDecisionSource,
    GateController,
    InteractiveDecisionSource,
)
from protocol_orchestrator.reviewing.consultation import ConsultationAggregator
from protocol_orchestrator.reviewing.reviewers import CommandReviewer

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".protocol_orchestrator.yaml"


def setup_logging(verbose: bool = False, debug: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="protocol-orchestrator",
        description="Run declarative build/verify/gate protocols with coding agents",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("--debug", action="store_true", help="Debug output")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    validate_parser = subparsers.add_parser("validate", help="Load and validate a protocol")
    validate_parser.add_argument("protocol", type=Path, help="Protocol file or directory")

    run_parser = subparsers.add_parser("run", help="Start or resume a run")
    run_parser.add_argument("protocol", type=Path, help="Protocol file or directory")
    run_parser.add_argument(
        "--project",
        type=Path,
        default=Path.cwd(),
        help="Project directory (default: current directory)",
    )
    run_parser.add_argument("--project-id", default="", help="Identifier used in artifact paths")
    run_parser.add_argument("--title", default="", help="Human-readable title for prompts")
    run_parser.add_argument("--run-id", help="Resume this run instead of starting a new one")
    run_parser.add_argument("--plan-file", type=Path, help="Plan document for per-plan-phase phases")
    run_parser.add_argument("--config", type=Path, help=f"Settings file (default: {CONFIG_FILENAME})")
    run_parser.add_argument(
        "--interactive",
        action="store_true",
        help="Ask for gate decisions on the terminal instead of waiting for approve/reject",
    )
    run_parser.add_argument(
        "--no-side-effects",
        action="store_true",
        help="Do not commit or push",
    )

    status_parser = subparsers.add_parser("status", help="Show run state")
    status_parser.add_argument("run_id", nargs="?", help="Run to show (default: list runs)")
    status_parser.add_argument("--project", type=Path, default=Path.cwd(), help="Project directory")
    status_parser.add_argument("--config", type=Path, help="Settings file")

    for name, help_text in (
        ("approve", "Approve the pending gate of a run"),
        ("reject", "Reject the pending gate of a run"),
    ):
        gate_parser = subparsers.add_parser(name, help=help_text)
        gate_parser.add_argument("run_id", help="Run whose gate is decided")
        gate_parser.add_argument("--reason", default="", required=name == "reject", help="Reason")
        gate_parser.add_argument("--project", type=Path, default=Path.cwd(), help="Project directory")
        gate_parser.add_argument("--config", type=Path, help="Settings file")

    return parser.parse_args(argv)


def load_settings(project: Path, config: Path | None) -> Settings:
    """Explicit --config, then the project's settings file, then the environment."""
    path = config or project / CONFIG_FILENAME
    if path.exists():
        return load_settings_from_yaml(path)
    if config is not None:
        raise SchemaError(f"Settings file not found: {config}")
    return get_settings()


def state_dir(project: Path, settings: Settings) -> Path:
    return (project / settings.state_dir).resolve()


def print_state(state: RunState) -> None:
    print(f"Run:       {state.run_id}")
    print(f"Protocol:  {state.protocol}")
    print(f"Status:    {state.status.value}")
    print(f"Phase:     {state.current_phase or '-'}")
    print(f"Step:      {state.step.value}")
    print(f"Iteration: {state.iteration + 1}")
    plan_phase = state.current_plan_phase
    if plan_phase is not None:
        print(f"Plan:      {plan_phase.id} ({state.plan_phase_index + 1}/{len(state.plan_phases)})")
    if state.pending_gate:
        print(f"Gate:      {state.pending_gate} (awaiting decision)")
    if state.history:
        print("\nCompleted phases:")
        for record in state.history:
            sub = f" [{record.plan_phase_id}]" if record.plan_phase_id else ""
            print(f"  - {record.phase_id}{sub}: {record.outcome.value}")
    if state.gate_log:
        print("\nGate decisions:")
        for gate in state.gate_log:
            verdict = "approved" if gate.approved else "rejected"
            reason = f": {gate.reason}" if gate.reason else ""
            print(f"  - {gate.gate} {verdict} by {gate.decided_by}{reason}")


def build_executor(args: argparse.Namespace, settings: Settings, store: RunStateStore) -> PhaseExecutor:
    """Wire the executor's collaborators from settings."""
    project = args.project.resolve()
    graph = load_protocol(args.protocol)

    agent = CommandAgentRunner(
        settings.agent.command,
        prompt_via_stdin=settings.agent.prompt_via_stdin,
    )
    if not agent.is_available:
        logger.warning("Agent CLI %s not found on PATH", settings.agent.command[0])

    aggregator = None
    if any(phase.has_consultation for phase in graph.protocol.phases):
        reviewer = CommandReviewer(
            settings.reviewer.command,
            working_dir=project,
            transcript_dir=store.outputs_dir / "raw",
        )
        aggregator = ConsultationAggregator(
            reviewer,
            policy=settings.consultation.unavailable_policy,
            min_responders=settings.consultation.min_responders,
            timeout=settings.timeouts.reviewer,
        )

    source: DecisionSource
    if args.interactive or settings.gates.interactive:
        source = InteractiveDecisionSource()
    else:
        source = FileDecisionSource(store.gates_dir, poll_interval=settings.gates.poll_interval)

    side_effects: SideEffects
    if args.no_side_effects or not settings.side_effects.enabled:
        side_effects = NullSideEffects()
    else:
        side_effects = GitSideEffects(project)

    return PhaseExecutor(
        graph,
        store,
        project_root=project,
        agent=agent,
        gates=GateController(source),
        verifier=VerificationRunner(),
        aggregator=aggregator,
        side_effects=side_effects,
        settings=settings,
        project_id=args.project_id,
        title=args.title,
        plan_file=args.plan_file,
    )


async def cmd_validate(args: argparse.Namespace) -> int:
    """Load a protocol and report its phases."""
    graph = load_protocol(args.protocol)
    protocol = graph.protocol
    print(f"Protocol {protocol.name} v{protocol.version}: OK")
    for phase in protocol.phases:
        successor = graph.next_phase(phase.id) or "(end)"
        gate = f" gate={phase.gate.name}" if phase.gate else ""
        print(f"  {phase.id:<20} {phase.type.value:<15} -> {successor}{gate}")
    return 0


async def cmd_run(args: argparse.Namespace) -> int:
    """Start or resume a run."""
    project = args.project.resolve()
    settings = load_settings(project, args.config)
    run_id = args.run_id or new_run_id(args.project_id)
    store = RunStateStore(state_dir(project, settings), run_id)

    if args.run_id and not store.exists:
        print(f"No run {args.run_id} under {store.run_dir.parent}")
        return 1

    executor = build_executor(args, settings, store)
    print(f"Protocol Orchestrator - run {run_id}")
    print("=" * 50)

    with store:
        state = await executor.run()

    print()
    print_state(state)
    return 0 if state.status == RunStatus.COMPLETED else 1


async def cmd_status(args: argparse.Namespace) -> int:
    """List runs or show one run's state."""
    project = args.project.resolve()
    settings = load_settings(project, args.config)
    root = state_dir(project, settings)

    if not args.run_id:
        runs = RunStateStore.list_runs(root)
        if not runs:
            print(f"No runs under {root}")
        for run_id in runs:
            state = RunStateStore(root, run_id).load_snapshot()
            status = state.status.value if state else "unknown"
            print(f"{run_id}  {status}")
        return 0

    store = RunStateStore(root, args.run_id)
    if not store.exists:
        print(f"No run {args.run_id} under {root}")
        return 1
    # Replay the log rather than trusting the snapshot
    state = store.load()
    assert state is not None
    print_state(state)
    return 0


async def cmd_decide(args: argparse.Namespace, approved: bool) -> int:
    """Answer the pending gate of a run through its decision file."""
    project = args.project.resolve()
    settings = load_settings(project, args.config)
    store = RunStateStore(state_dir(project, settings), args.run_id)
    if not store.exists:
        print(f"No run {args.run_id}")
        return 1

    state = store.load()
    if state is None or state.pending_gate is None:
        print(f"Run {args.run_id} is not waiting at a gate")
        return 1

    path = store.write_gate_decision(
        state.pending_gate,
        {
            "approved": approved,
            "reason": args.reason,
            "decided_by": "human",
            "request_seq": state.gate_request_seq,
        },
    )
    print(f"Gate {state.pending_gate} {'approved' if approved else 'rejected'} ({path})")
    return 0


async def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(verbose=args.verbose, debug=args.debug)

    if args.command is None:
        print("Usage: python -m protocol_orchestrator run path/to/protocol.yaml --project .")
        print("       python -m protocol_orchestrator validate path/to/protocol.yaml")
        print("       python -m protocol_orchestrator status [RUN_ID]")
        print("       python -m protocol_orchestrator approve RUN_ID")
        print("       python -m protocol_orchestrator reject RUN_ID --reason '...'")
        return 0

    try:
        if args.command == "validate":
            return await cmd_validate(args)
        elif args.command == "run":
            return await cmd_run(args)
        elif args.command == "status":
            return await cmd_status(args)
        elif args.command == "approve":
            return await cmd_decide(args, approved=True)
        elif args.command == "reject":
            return await cmd_decide(args, approved=False)
        else:
            print(f"Unknown command: {args.command}")
            return 1
    except SchemaError as e:
        print(f"Invalid protocol: {e}")
        return 2
    except PersistenceError as e:
        print(f"State error: {e}")
        if args.debug:
            import traceback
            traceback.print_exc()
        return 3


def cli_main() -> None:
    """CLI entry point (synchronous wrapper)."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli_main()
