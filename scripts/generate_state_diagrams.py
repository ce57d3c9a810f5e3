"""
Generate Mermaid diagrams from the delivery and order transition tables.

Usage:
    python scripts/generate_state_diagrams.py                  # print to stdout
    python scripts/generate_state_diagrams.py --update-readme  # rewrite README.md section
    python scripts/generate_state_diagrams.py --check          # fail if README.md is out of date (CI)
"""
import argparse
import re
import sys
from enum import Enum
from pathlib import Path
from typing import Mapping, Iterable

# make the lastmile package importable when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from lastmile.db.models.delivery import DeliveryStatus
from lastmile.db.models.order import OrderStatus
from lastmile.domain.services.state_machine import DELIVERY_TRANSITIONS, ORDER_TRANSITIONS

README_PATH = Path(__file__).resolve().parent.parent / "README.md"

START_MARKER = "<!-- STATE_DIAGRAMS_START -->"
END_MARKER = "<!-- STATE_DIAGRAMS_END -->"
SECTION_TITLE = "### State diagrams"

DELIVERY_LABELS: dict[str, str] = {
    DeliveryStatus.PENDING.value: "Waiting for a courier",
    DeliveryStatus.ASSIGNED.value: "Courier heading to restaurant",
    DeliveryStatus.PICKED_UP.value: "Picked up",
    DeliveryStatus.IN_TRANSIT.value: "On the way to customer",
    DeliveryStatus.DELIVERED.value: "Delivered",
    DeliveryStatus.CANCELLED.value: "Cancelled",
}

ORDER_LABELS: dict[str, str] = {
    OrderStatus.PENDING.value: "Placed",
    OrderStatus.CONFIRMED.value: "Confirmed by restaurant",
    OrderStatus.PREPARING.value: "Preparing",
    OrderStatus.READY_FOR_PICKUP.value: "Ready for pickup",
    OrderStatus.OUT_FOR_DELIVERY.value: "Out for delivery",
    OrderStatus.DELIVERED.value: "Delivered",
    OrderStatus.CANCELLED.value: "Cancelled",
}


def _sanitize_id(state_value: str) -> str:
    """Mermaid state ids may not contain dots or dashes."""
    return state_value.replace(".", "_").replace("-", "_")


def generate_mermaid_from_transitions(
    transitions: Mapping[Enum, Iterable[Enum]],
    labels: dict[str, str],
) -> str:
    """
    Render a stateDiagram-v2 from a transition table.

    The first key is the initial state; states without outgoing transitions
    are drawn as final. Targets are sorted so the output is stable.
    """
    lines: list[str] = ["stateDiagram-v2"]

    all_states: list[str] = []
    for source, targets in transitions.items():
        for state in [source, *sorted(targets, key=lambda s: s.value)]:
            if state.value not in all_states:
                all_states.append(state.value)

    for state_value in all_states:
        lines.append(f"    {_sanitize_id(state_value)} : {labels.get(state_value, state_value)}")

    lines.append("")

    initial = next(iter(transitions))
    lines.append(f"    [*] --> {_sanitize_id(initial.value)}")

    for source, targets in transitions.items():
        source_id = _sanitize_id(source.value)
        for target in sorted(targets, key=lambda s: s.value):
            lines.append(f"    {source_id} --> {_sanitize_id(target.value)}")

    for source, targets in transitions.items():
        if not targets:
            lines.append(f"    {_sanitize_id(source.value)} --> [*]")

    return "\n".join(lines)


def generate_all_diagrams() -> dict[str, str]:
    """{title: mermaid source} for every transition table."""
    return {
        "Delivery (DeliveryStatus)": generate_mermaid_from_transitions(
            DELIVERY_TRANSITIONS, DELIVERY_LABELS,
        ),
        "Order (OrderStatus)": generate_mermaid_from_transitions(
            ORDER_TRANSITIONS, ORDER_LABELS,
        ),
    }


def format_diagrams_as_markdown(diagrams: dict[str, str]) -> str:
    sections: list[str] = []
    for name, mermaid_code in diagrams.items():
        sections.append(f"#### {name}\n")
        sections.append(f"```mermaid\n{mermaid_code}\n```\n")
    return "\n".join(sections)


def _render_section(markdown_content: str) -> str:
    return f"{START_MARKER}\n\n{SECTION_TITLE}\n\n{markdown_content}\n{END_MARKER}"


_SECTION_PATTERN = re.compile(
    re.escape(START_MARKER) + r".*?" + re.escape(END_MARKER),
    re.DOTALL,
)


def update_readme(markdown_content: str, path: Path = README_PATH) -> None:
    """Replace the marked section, or append one when the markers are missing."""
    content = path.read_text(encoding="utf-8") if path.exists() else ""
    new_section = _render_section(markdown_content)

    if START_MARKER in content:
        content = _SECTION_PATTERN.sub(lambda _: new_section, content)
    else:
        content = content.rstrip("\n") + "\n\n" + new_section + "\n" if content else new_section + "\n"

    path.write_text(content, encoding="utf-8")
    print(f"Updated: {path}")


def check_readme(markdown_content: str, path: Path = README_PATH) -> bool:
    """True when the marked section matches the current transition tables."""
    if not path.exists():
        print(f"Error: {path} not found")
        return False

    match = _SECTION_PATTERN.search(path.read_text(encoding="utf-8"))
    if not match:
        print(f"Error: no state diagram markers in {path.name}")
        return False

    if match.group(0) == _render_section(markdown_content):
        print("State diagrams are in sync")
        return True

    print(f"Error: state diagrams in {path.name} are out of date")
    print("Run: python scripts/generate_state_diagrams.py --update-readme")
    return False


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Generate Mermaid diagrams from the delivery and order state machines"
    )
    parser.add_argument(
        "--update-readme",
        action="store_true",
        help="rewrite the diagram section of README.md",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="exit 1 when README.md is out of date (for CI)",
    )
    args = parser.parse_args(argv)

    markdown = format_diagrams_as_markdown(generate_all_diagrams())

    if args.check:
        sys.exit(0 if check_readme(markdown) else 1)
    elif args.update_readme:
        update_readme(markdown)
    else:
        print(markdown)


if __name__ == "__main__":
    main()
