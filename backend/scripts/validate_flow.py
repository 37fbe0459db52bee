"""Script to validate a flow definition JSON file"""
import argparse
import json
import sys

sys.path.insert(0, ".")

from flowrun.domain.enums import AdvancementKind
from flowrun.domain.models import FlowDefinition
from flowrun.engine.flow_validator import validate_flow


def print_steps(steps, depth: int = 0) -> None:
    indent = "   " * depth
    for i, step in enumerate(steps):
        print(f"{indent}{i + 1}. [{step.step_type}] {step.display_name}")
        if step.skip_condition:
            cond = step.skip_condition
            print(f"{indent}   ⏭️ Skip if {cond.source} {cond.operator} '{cond.value}'")
        if AdvancementKind.for_step_type(step.step_type) != AdvancementKind.LINEAR:
            for path in step.paths:
                marker = " (default)" if path.is_default else ""
                print(f"{indent}   🌿 Path {path.path_id}: {path.label}{marker}")
                if path.condition:
                    cond = path.condition
                    print(f"{indent}      If {cond.source} {cond.operator} '{cond.value}'")
                print_steps(path.steps, depth + 2)


def main() -> int:
    parser = argparse.ArgumentParser(description="Validate a flow definition")
    parser.add_argument("path", help="Flow definition JSON file")
    parser.add_argument("--quiet", action="store_true", help="Only print problems")
    args = parser.parse_args()

    with open(args.path, encoding="utf-8") as fh:
        raw = json.load(fh)

    report = validate_flow(raw)

    if not args.quiet and report.is_valid:
        flow = FlowDefinition.model_validate(raw)
        print("=" * 60)
        print(f"FLOW ANALYSIS: {flow.name}")
        print("=" * 60)
        print_steps(flow.steps)

    print("\n" + "=" * 60)
    print("VALIDATION RESULTS")
    print("=" * 60)
    for error in report.errors:
        print(f"❌ {error}")
    for warning in report.warnings:
        print(f"⚠️ {warning}")
    if report.is_valid:
        print("✅ Flow definition is valid")

    return 0 if report.is_valid else 1


if __name__ == "__main__":
    sys.exit(main())
