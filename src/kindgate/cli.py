"""
CLI entry point for KindGate.

Validates typed lines as a child's input and prints the verdict. Lines
starting with ``>`` are validated as device output instead.
"""

from __future__ import annotations

import asyncio

from kindgate.config import get_settings
from kindgate.logging import get_logger
from kindgate.safety.base import ValidationVerdict
from kindgate.safety.gateway import SafetyGateway

logger = get_logger(__name__)

DEMO_USER_ID = "child_demo"


def format_verdict(verdict: ValidationVerdict) -> str:
    status = "ALLOWED" if verdict.allowed else "BLOCKED"
    lines = [f"{status} (risk: {verdict.risk_level.value}, confidence: {verdict.confidence:.1f})"]
    for violation in verdict.violations:
        lines.append(f"  - [{violation.severity.value}] {violation.description}")
    if verdict.refusal_message:
        lines.append(f"  says: {verdict.refusal_message}")
    if verdict.sanitized_text is not None:
        lines.append(f"  speaks: {verdict.sanitized_text}")
    if verdict.review_request_id:
        lines.append(f"  parent review requested: {verdict.review_request_id}")
    return "\n".join(lines)


async def interactive_session(user_id: str = DEMO_USER_ID):
    """Validate lines typed at the prompt until the user quits."""
    gateway = SafetyGateway(settings=get_settings())
    age_group = gateway.resolve_age_group(user_id)

    print("\n" + "=" * 60)
    print("KindGate safety console")
    print("=" * 60)
    print(f"\nValidating as '{user_id}' (age group: {age_group.value})")
    print("Prefix a line with '>' to validate it as device output.")
    print("Type 'quit' or 'exit' to end the session.")
    print("-" * 60 + "\n")

    while True:
        try:
            line = input("text: ").strip()

            if not line:
                continue

            if line.lower() in ["quit", "exit"]:
                break

            if line.startswith(">"):
                verdict = await gateway.validate_output(line[1:].strip(), user_id)
            else:
                verdict = await gateway.validate_input(line, user_id)
            print(format_verdict(verdict) + "\n")

        except (KeyboardInterrupt, EOFError):
            print()
            break

    print(f"\n{gateway.get_metrics()['total_validations']} validations this session.\n")


def main():
    """Main entry point."""
    asyncio.run(interactive_session())


if __name__ == "__main__":
    main()
