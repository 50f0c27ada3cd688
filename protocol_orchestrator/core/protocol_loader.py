"""Load and validate protocol definitions from YAML or JSON."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from protocol_orchestrator.core.errors import SchemaError
from protocol_orchestrator.core.protocol import (
    DEFAULT_CHECK_RETRIES,
    DEFAULT_MAX_ITERATIONS_CHECKS,
    DEFAULT_MAX_ITERATIONS_CONSULTATION,
    DEFAULT_SIGNALS,
    BuildSpec,
    CheckSpec,
    FailurePolicy,
    GateSpec,
    OnCompleteSpec,
    PhaseDefinition,
    PhaseGraph,
    PhaseType,
    ProtocolDefinition,
    TransitionSpec,
    VerifySpec,
)

logger = logging.getLogger(__name__)

PROTOCOL_FILENAMES = ("protocol.yaml", "protocol.yml", "protocol.json")


def load_protocol(path: Path | str) -> PhaseGraph:
    """
    Load a protocol file and return its validated phase graph.

    Args:
        path: A protocol file, or a directory containing protocol.yaml/.json.

    Returns:
        PhaseGraph with the immutable protocol and resolved transition table.

    Raises:
        SchemaError: If the file is missing, unparsable or structurally invalid.
    """
    protocol_file = _find_protocol_file(Path(path))

    try:
        with open(protocol_file, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise SchemaError(f"Parse error: {e}", path=str(protocol_file)) from e
    except OSError as e:
        raise SchemaError(f"Cannot read protocol: {e}", path=str(protocol_file)) from e

    graph = parse_protocol(data, source_path=str(protocol_file))
    logger.info(
        "Loaded protocol %s v%s (%d phases) from %s",
        graph.protocol.name,
        graph.protocol.version,
        len(graph.protocol.phases),
        protocol_file,
    )
    return graph


def parse_protocol(data: Any, *, source_path: str | None = None) -> PhaseGraph:
    """
    Validate a raw protocol mapping and build its phase graph.

    Args:
        data: Parsed YAML/JSON document.
        source_path: Where the document came from (for error messages and
            resolving prompt files).

    Returns:
        PhaseGraph.

    Raises:
        SchemaError: On any structural problem.
    """
    if not isinstance(data, dict):
        raise SchemaError("Protocol must be a mapping", path=source_path)

    name = data.get("name")
    if not name or not isinstance(name, str):
        raise SchemaError('Missing "name" field', path=source_path)

    raw_phases = data.get("phases")
    if not isinstance(raw_phases, list) or not raw_phases:
        raise SchemaError('Protocol must declare at least one phase in "phases"', path=source_path)

    defaults = data.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise SchemaError('"defaults" must be a mapping', path=source_path)

    try:
        phases = tuple(
            _parse_phase(raw, index, defaults, source_path)
            for index, raw in enumerate(raw_phases)
        )
        protocol = ProtocolDefinition(
            name=name,
            version=str(data.get("version", "1.0")),
            description=str(data.get("description") or ""),
            phases=phases,
            signals=_parse_signals(data.get("signals"), source_path),
            phase_completion=_parse_checks(data.get("phase_completion"), {}, source_path),
            defaults=defaults,
            source_path=source_path,
        )
    except ValidationError as e:
        raise SchemaError(f"Invalid protocol: {e}", path=source_path) from e
    except (TypeError, ValueError) as e:
        raise SchemaError(f"Invalid value in protocol: {e}", path=source_path) from e

    _check_unique_ids(protocol, source_path)
    transitions = _resolve_transitions(protocol, raw_phases, source_path)
    _check_gate_requirements(protocol, source_path)
    _check_return_targets(protocol, source_path)

    return PhaseGraph(protocol=protocol, transitions=transitions)


def _find_protocol_file(path: Path) -> Path:
    if path.is_dir():
        for filename in PROTOCOL_FILENAMES:
            candidate = path / filename
            if candidate.exists():
                return candidate
        raise SchemaError(
            f"No protocol file found (looked for {', '.join(PROTOCOL_FILENAMES)})",
            path=str(path),
        )
    if not path.exists():
        raise SchemaError("Protocol file not found", path=str(path))
    return path


def _parse_signals(raw: Any, source_path: str | None) -> tuple[str, ...]:
    if raw is None:
        return DEFAULT_SIGNALS

    if isinstance(raw, dict):
        names = [str(k) for k in raw]
    elif isinstance(raw, list):
        names = [str(s) for s in raw]
    else:
        raise SchemaError('"signals" must be a list or mapping', path=source_path)

    # BLOCKED:<reason> in the vocabulary names the BLOCKED family
    names = [n.split(":", 1)[0].strip().upper() for n in names]
    missing = [s for s in DEFAULT_SIGNALS if s not in names]
    if missing:
        raise SchemaError(
            f"Signal vocabulary must include {', '.join(missing)}",
            path=source_path,
        )
    return tuple(dict.fromkeys(names))


def _parse_checks(
    raw: Any,
    default_checks: dict[str, Any],
    source_path: str | None,
) -> tuple[CheckSpec, ...]:
    """Parse a checks block: name -> command string, mapping, or null (use default)."""
    if raw is None:
        return ()

    if isinstance(raw, list):
        # List of names referring to defaults.checks
        raw = {str(name): None for name in raw}

    if not isinstance(raw, dict):
        raise SchemaError('"checks" must be a mapping of name -> command', path=source_path)

    checks: list[CheckSpec] = []
    for check_name, value in raw.items():
        if value is None:
            if check_name not in default_checks:
                raise SchemaError(
                    f"Check '{check_name}' has no command and no default",
                    path=source_path,
                )
            value = default_checks[check_name]

        if isinstance(value, str):
            checks.append(CheckSpec(name=check_name, command=value))
            continue

        if not isinstance(value, dict) or not value.get("command"):
            raise SchemaError(f"Check '{check_name}' needs a command", path=source_path)

        on_fail = value.get("on_fail", FailurePolicy.FAIL.value)
        if not on_fail or not isinstance(on_fail, str):
            raise SchemaError(
                f"Check '{check_name}' has invalid on_fail '{on_fail}' "
                f"(expected: {', '.join(p.value for p in FailurePolicy)} or a phase id)",
                path=source_path,
            )
        # Anything other than fail/retry names the phase to return to
        return_to: str | None = None
        try:
            policy = FailurePolicy(on_fail)
        except ValueError:
            policy = FailurePolicy.FAIL
            return_to = on_fail

        default_retries = DEFAULT_CHECK_RETRIES if policy == FailurePolicy.RETRY else 0
        max_retries = int(value.get("max_retries", default_retries))
        if max_retries < 0:
            raise SchemaError(
                f"Check '{check_name}' has negative max_retries", path=source_path
            )

        fields: dict[str, Any] = {
            "name": check_name,
            "command": value["command"],
            "cwd": value.get("cwd"),
            "on_fail": policy,
            "max_retries": max_retries if policy == FailurePolicy.RETRY else 0,
            "return_to": return_to,
        }
        if "retry_delay" in value:
            fields["retry_delay"] = float(value["retry_delay"])
        if "timeout" in value:
            fields["timeout"] = float(value["timeout"])
        checks.append(CheckSpec(**fields))

    return tuple(checks)


def _parse_gate(raw: Any, phase_id: str, source_path: str | None) -> GateSpec | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        return GateSpec(name=raw)
    if not isinstance(raw, dict) or not raw.get("name"):
        raise SchemaError(f"Phase '{phase_id}': gate needs a name", path=source_path)
    requires = raw.get("requires") or []
    if not isinstance(requires, list):
        raise SchemaError(f"Phase '{phase_id}': gate.requires must be a list", path=source_path)
    return GateSpec(
        name=raw["name"],
        requires=tuple(str(r) for r in requires),
        next=raw.get("next"),
        has_next="next" in raw,
    )


def _parse_phase(
    raw: Any,
    index: int,
    defaults: dict[str, Any],
    source_path: str | None,
) -> PhaseDefinition:
    if not isinstance(raw, dict):
        raise SchemaError(f"Phase #{index} must be a mapping", path=source_path)

    phase_id = raw.get("id")
    if not phase_id or not isinstance(phase_id, str):
        raise SchemaError(f'Phase #{index} is missing "id"', path=source_path)

    raw_type = raw.get("type", PhaseType.ONCE.value)
    try:
        phase_type = PhaseType(raw_type)
    except ValueError:
        raise SchemaError(
            f"Phase '{phase_id}' has unknown type '{raw_type}' "
            f"(expected: {', '.join(t.value for t in PhaseType)})",
            path=source_path,
        ) from None

    checks = _parse_checks(raw.get("checks"), defaults.get("checks") or {}, source_path)

    build_raw = raw.get("build")
    if build_raw is not None and not isinstance(build_raw, dict):
        raise SchemaError(f"Phase '{phase_id}': build must be a mapping", path=source_path)

    verify_raw = raw.get("verify")
    if verify_raw is not None and not isinstance(verify_raw, dict):
        raise SchemaError(f"Phase '{phase_id}': verify must be a mapping", path=source_path)

    if phase_type == PhaseType.BUILD_VERIFY:
        if not build_raw or not build_raw.get("prompt") or not build_raw.get("artifact"):
            raise SchemaError(
                f"build_verify phase '{phase_id}' requires build.prompt and build.artifact",
                path=source_path,
            )

    build = BuildSpec(
        prompt=(build_raw or {}).get("prompt") or f"{phase_id}.md",
        artifact=(build_raw or {}).get("artifact"),
    )

    verify: VerifySpec | None = None
    if verify_raw is not None:
        merged = {**(defaults.get("verify") or {}), **verify_raw}
        models = merged.get("models") or []
        if not isinstance(models, list):
            raise SchemaError(
                f"Phase '{phase_id}': verify.models must be a list", path=source_path
            )
        verify = VerifySpec(
            type=str(merged.get("type", "review")),
            models=tuple(str(m) for m in models),
            parallel=bool(merged.get("parallel", True)),
        )

    if phase_type == PhaseType.BUILD_VERIFY and not (verify and verify.models) and not checks:
        raise SchemaError(
            f"build_verify phase '{phase_id}' requires verify.models or at least one check",
            path=source_path,
        )

    if "max_iterations" in raw:
        max_iterations = int(raw["max_iterations"])
    elif "max_iterations" in defaults:
        max_iterations = int(defaults["max_iterations"])
    elif verify and verify.models:
        max_iterations = DEFAULT_MAX_ITERATIONS_CONSULTATION
    else:
        max_iterations = DEFAULT_MAX_ITERATIONS_CHECKS
    if max_iterations < 1:
        raise SchemaError(
            f"Phase '{phase_id}': max_iterations must be at least 1", path=source_path
        )

    transition_raw = raw.get("transition") or {}
    if not isinstance(transition_raw, dict):
        raise SchemaError(f"Phase '{phase_id}': transition must be a mapping", path=source_path)

    on_complete_raw = raw.get("on_complete") or {}

    return PhaseDefinition(
        id=phase_id,
        name=str(raw.get("name") or phase_id),
        type=phase_type,
        build=build,
        verify=verify,
        checks=checks,
        gate=_parse_gate(raw.get("gate"), phase_id, source_path),
        transition=TransitionSpec(
            on_complete=transition_raw.get("on_complete"),
            on_fail=transition_raw.get("on_fail"),
            on_all_phases_complete=transition_raw.get("on_all_phases_complete"),
        ),
        max_iterations=max_iterations,
        on_complete=OnCompleteSpec(
            commit=bool(on_complete_raw.get("commit", False)),
            push=bool(on_complete_raw.get("push", False)),
        ),
        agent_timeout=raw.get("timeout"),
    )


def _check_unique_ids(protocol: ProtocolDefinition, source_path: str | None) -> None:
    seen: set[str] = set()
    for phase in protocol.phases:
        if phase.id in seen:
            raise SchemaError(f"Duplicate phase id '{phase.id}'", path=source_path)
        seen.add(phase.id)


def _resolve_transitions(
    protocol: ProtocolDefinition,
    raw_phases: list[dict[str, Any]],
    source_path: str | None,
) -> dict[str, dict[str, str | None]]:
    """Build phase id -> {outcome key -> next phase id or None}."""
    ids = set(protocol.phase_ids)
    table: dict[str, dict[str, str | None]] = {}

    for index, phase in enumerate(protocol.phases):
        raw_transition = raw_phases[index].get("transition") or {}
        implicit_next = (
            protocol.phases[index + 1].id if index + 1 < len(protocol.phases) else None
        )

        # gate.next wins; then transition.on_complete; then list order
        if phase.gate and phase.gate.has_next:
            on_complete = phase.gate.next
        elif "on_complete" in raw_transition:
            on_complete = phase.transition.on_complete
        else:
            on_complete = implicit_next

        # Every declared target must resolve, including ones gate.next overrides
        declared = {
            f"transition.{key}": raw_transition[key]
            for key in ("on_complete", "on_fail", "on_all_phases_complete")
            if key in raw_transition
        }
        if phase.gate and phase.gate.has_next:
            declared["gate.next"] = phase.gate.next
        for key, target in declared.items():
            if target is not None and target not in ids:
                raise SchemaError(
                    f"Phase '{phase.id}': {key} target '{target}' does not exist",
                    path=source_path,
                )

        entry: dict[str, str | None] = {"on_complete": on_complete}
        if phase.transition.on_fail is not None:
            entry["on_fail"] = phase.transition.on_fail
        if "on_all_phases_complete" in raw_transition:
            entry["on_all_phases_complete"] = phase.transition.on_all_phases_complete

        if (
            phase.gate
            and phase.gate.has_next
            and "on_complete" in raw_transition
            and phase.transition.on_complete != phase.gate.next
        ):
            logger.warning(
                "Phase %s: gate.next (%s) overrides transition.on_complete (%s)",
                phase.id,
                phase.gate.next,
                phase.transition.on_complete,
            )

        table[phase.id] = entry

    return table


def _check_gate_requirements(protocol: ProtocolDefinition, source_path: str | None) -> None:
    for phase in protocol.phases:
        if not phase.gate:
            continue
        known = phase.step_names()
        unknown = [r for r in phase.gate.requires if r not in known]
        if unknown:
            raise SchemaError(
                f"Phase '{phase.id}': gate '{phase.gate.name}' requires unknown "
                f"step(s) {', '.join(unknown)} (known: {', '.join(sorted(known))})",
                path=source_path,
            )


def _check_return_targets(protocol: ProtocolDefinition, source_path: str | None) -> None:
    ids = set(protocol.phase_ids)
    owners = [(phase.id, phase.checks) for phase in protocol.phases]
    owners.append(("phase_completion", protocol.phase_completion))
    for owner, checks in owners:
        for check in checks:
            if check.return_to is not None and check.return_to not in ids:
                raise SchemaError(
                    f"{owner}: check '{check.name}' on_fail target '{check.return_to}' "
                    "is neither fail, retry nor a phase id",
                    path=source_path,
                )
