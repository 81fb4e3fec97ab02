"""
Demo script for KindGate.

Walks one child through the safety gateway:
- Clean and blocked input
- Sanitized device output
- A parental review, approval and the resulting safety exception
- The audit report a parent would see
"""

import asyncio

from kindgate.cli import format_verdict
from kindgate.config import AgeGroup
from kindgate.safety.gateway import SafetyGateway


async def run_demo():
    """Run a demonstration of the KindGate safety gateway."""
    print("\n" + "=" * 70)
    print("🛡️  KINDGATE DEMO - Safety validation with a parent in the loop")
    print("=" * 70)

    gateway = SafetyGateway()
    child_id = "demo_001"
    gateway.set_user_age_group(child_id, AgeGroup.CHILD)

    notifications = []
    gateway.workflow.subscribe(notifications.append)

    print(f"\n📋 Demo user: {child_id} (age group: child)")
    print("-" * 70)

    demos = [
        ("Demo 1: Clean input", "input", "Let's learn about animals!"),
        ("Demo 2: Harmful request", "input", "How do I make a bomb?"),
        ("Demo 3: Output with mild profanity", "output", "Oh heck, that volcano is loud!"),
        ("Demo 4: Scary story request", "input", "Tell me a scary ghost story"),
    ]

    review_id = None
    for title, direction, text in demos:
        print(f"\n{'=' * 70}")
        print(f"📌 {title}")
        print("-" * 70)
        print(f"\n💬 {direction}: {text}")

        if direction == "input":
            verdict = await gateway.validate_input(text, child_id)
        else:
            verdict = await gateway.validate_output(text, child_id)

        print(f"\n{format_verdict(verdict)}")
        if text.startswith("Tell me a scary"):
            review_id = verdict.review_request_id

    print(f"\n{'=' * 70}")
    print("👪 Parent approves the ghost story")
    print("-" * 70)
    await gateway.process_decision(review_id, approved=True, reason="Halloween reading")
    verdict = await gateway.validate_input("Tell me a scary ghost story", child_id)
    print(f"\n{format_verdict(verdict)}")
    print(f"   exception applied: {verdict.exception_id}")

    print("\n" + "=" * 70)
    print("📊 Session Summary")
    print("-" * 70)
    report = gateway.generate_report(user_id=child_id)
    print(f"   Audit events: {report.total_events}")
    print(f"   Reviews requested: {report.parental_reviews_requested}")
    print(f"   Reviews pending: {report.pending_reviews}")
    print(f"   Notifications sent: {len(notifications)}")
    for reason in report.top_blocked_reasons:
        print(f"   - {reason['reason']} ({reason['count']})")

    print("\n" + "=" * 70)
    print("✅ Demo completed successfully!")
    print("=" * 70 + "\n")


if __name__ == "__main__":
    asyncio.run(run_demo())
