"""Sample order-processing workflows built on the warden state machine."""

from __future__ import annotations

import argparse
import logging
import random
import sys
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

from .listener import EventBus, LoggingListener, MetricsListener
from .machine import StateMachine, StateMachineInstance, new
from .persistence import InMemoryInstancePersister, InstancePersister
from .state import Event, StateContext, StateResult, TransitionType
from .utils import safe_string

logger = logging.getLogger(__name__)

BASIC_ORDER: dict[str, Any] = {
    "order_id": "12345",
    "customer_id": "cust-789",
    "product_id": "prod-456",
    "quantity": 2,
    "price": 99.99,
    "email": "customer@example.com",
}

ADVANCED_ORDERS: list[dict[str, Any]] = [
    {"order_id": "STD-001", "order_type": "standard", "amount": 50.0, "priority": "normal"},
    {"order_id": "PRM-001", "order_type": "premium", "amount": 250.0, "priority": "high"},
    {"order_id": "INV-001", "order_type": "invalid", "amount": 0.0, "priority": "unknown"},
]


def _data(ctx: StateContext) -> dict[str, Any]:
    return ctx.data or {}


def _failure(message: str) -> StateResult:
    return StateResult(
        success=False,
        error=ValueError(message),
        event=Event(TransitionType.ON_FAILURE),
    )


def _success(data: dict[str, Any]) -> StateResult:
    return StateResult(success=True, data=data, event=Event(TransitionType.ON_SUCCESS))


# Basic workflow tasks


def validate_order(ctx: StateContext) -> StateResult:
    """Check quantity and price and compute the order total."""
    data = _data(ctx)
    print(f"🔍 Validating order {data.get('order_id')}...")

    quantity = data["quantity"]
    price = data["price"]

    if quantity <= 0:
        return _failure(f"invalid quantity: {quantity}")
    if price <= 0:
        return _failure(f"invalid price: {price:.2f}")

    total = float(quantity) * price
    print(f"✅ Order validated successfully. Total: ${total:.2f}")
    return _success({"total": total, "validated": True})


def charge_payment(ctx: StateContext) -> StateResult:
    """Charge the customer for the validated total."""
    data = _data(ctx)
    print(f"💳 Processing payment for order {data.get('order_id')}...")

    total = data["total"]
    customer_id = data["customer_id"]
    print(f"Charging ${total:.2f} to customer {customer_id}")

    transaction_id = f"txn_{data.get('order_id')}_{123456}"
    print(f"✅ Payment processed successfully. Transaction ID: {transaction_id}")
    return _success(
        {
            "transaction_id": transaction_id,
            "payment_status": "charged",
            "charged_amount": total,
        }
    )


def ship_order(ctx: StateContext) -> StateResult:
    """Ship the order and notify the customer."""
    data = _data(ctx)
    print(f"📦 Shipping order {data.get('order_id')}...")

    product_id = data["product_id"]
    quantity = data["quantity"]
    email = data["email"]
    print(f"Preparing {quantity} units of product {product_id} for shipping")

    tracking_number = f"TRK{data.get('order_id')}{789}"
    print(f"📧 Sending shipping notification to {email}")
    print(f"✅ Order shipped successfully. Tracking: {tracking_number}")
    return _success(
        {
            "tracking_number": tracking_number,
            "shipping_status": "shipped",
            "notification_sent": True,
        }
    )


# Advanced workflow tasks


def check_order_type(ctx: StateContext) -> TransitionType:
    """Route standard orders to on_success and premium orders to on_failure."""
    print("Checking order type...")
    data = _data(ctx)
    if "order_type" not in data:
        raise ValueError("order_type not found")

    order_type = data["order_type"]
    if order_type == "standard":
        print("  → Standard order detected")
        return TransitionType.ON_SUCCESS
    if order_type == "premium":
        print("  → Premium order detected")
        return TransitionType.ON_FAILURE
    print(f"  → Invalid order type: {order_type}")
    raise ValueError(f"invalid order type: {order_type}")


def process_standard_order(ctx: StateContext) -> StateResult:
    """Process a standard order."""
    print("Processing standard order...")
    time.sleep(0.2)

    data = _data(ctx)
    print(
        f"  Standard processing for order {data.get('order_id')} "
        f"(amount: {data.get('amount')})"
    )
    processing_id = f"STD-PROC-{int(time.time())}"
    print(f"  ✓ Standard order processed (ID: {processing_id})")
    return _success(
        {
            "processing_id": processing_id,
            "processing_type": "standard",
            "processed_at": datetime.now(timezone.utc),
            "standard_done": True,
        }
    )


def process_premium_validation(ctx: StateContext) -> StateResult:
    """Check that a premium order's amount is large enough."""
    print("  [PARALLEL] Premium validation...")
    time.sleep(random.randrange(300) / 1000)

    amount = _data(ctx).get("amount")
    if (
        not isinstance(amount, (int, float))
        or isinstance(amount, bool)
        or amount < 100.0
    ):
        return _failure(f"insufficient amount for premium: {amount}")

    print("    ✓ Premium validation passed")
    return _success(
        {
            "premium_validated": True,
            "validation_score": random.randrange(100) + 80,
        }
    )


def process_premium_shipping(ctx: StateContext) -> StateResult:
    """Arrange express shipping for a premium order."""
    print("  [PARALLEL] Premium shipping...")
    time.sleep(random.randrange(250) / 1000)

    order_id = safe_string(_data(ctx).get("order_id"))
    tracking_number = f"PRM-TRACK-{int(time.time())}"
    print(
        f"    ✓ Premium shipping processed for order {order_id} "
        f"(Tracking: {tracking_number})"
    )
    return _success(
        {
            "premium_tracking": tracking_number,
            "shipping_method": "express",
            "estimated_delivery": datetime.now(timezone.utc) + timedelta(hours=24),
        }
    )


def process_premium_notification(ctx: StateContext) -> StateResult:
    """Send the premium notifications."""
    print("  [PARALLEL] Premium notification...")
    time.sleep(random.randrange(150) / 1000)

    order_id = safe_string(_data(ctx).get("order_id"))
    notification_id = f"PRM-NOTIFY-{int(time.time())}"
    print(
        f"    ✓ Premium notifications sent for order {order_id} "
        f"(ID: {notification_id})"
    )
    return _success(
        {
            "notification_id": notification_id,
            "notifications_sent": ["email", "sms", "push"],
            "premium_done": True,
        }
    )


# Machines


def build_basic_machine() -> StateMachine:
    """Build the linear order-processing machine."""
    return (
        new("order-processing")
        .start_state("start")
        .task_state("validate_order", validate_order)
        .task_state("charge_payment", charge_payment)
        .task_state("ship_order", ship_order)
        .end_state("completed")
        .transition("start", "validate_order", TransitionType.ON_SUCCESS)
        .transition("validate_order", "charge_payment", TransitionType.ON_SUCCESS)
        .transition("charge_payment", "ship_order", TransitionType.ON_SUCCESS)
        .transition("ship_order", "completed", TransitionType.ON_SUCCESS)
        .build()
    )


def build_advanced_machine(
    persister: InstancePersister | None = None, event_bus: EventBus | None = None
) -> StateMachine:
    """Build the branching machine with a decision, a parallel state and a join."""
    builder = new("complex-order-processing")
    if persister is not None:
        builder.with_persister(persister)
    if event_bus is not None:
        builder.with_event_bus(event_bus)
    return (
        builder.start_state("start")
        .decision_state("check_order_type", check_order_type)
        .task_state("process_standard", process_standard_order)
        .parallel_state(
            "process_premium",
            [
                process_premium_validation,
                process_premium_shipping,
                process_premium_notification,
            ],
        )
        .join_state("finalize", ["standard_done", "premium_done"])
        .end_state("completed")
        .end_state("failed")
        .transition("start", "check_order_type", TransitionType.ON_SUCCESS)
        .transition("check_order_type", "process_standard", TransitionType.ON_SUCCESS)
        .transition("check_order_type", "process_premium", TransitionType.ON_FAILURE)
        .transition("check_order_type", "failed", TransitionType.ON_TIMEOUT)
        .transition("process_standard", "finalize", TransitionType.ON_SUCCESS)
        .transition("process_standard", "failed", TransitionType.ON_FAILURE)
        .transition("process_premium", "finalize", TransitionType.ON_SUCCESS)
        .transition("process_premium", "failed", TransitionType.ON_FAILURE)
        .transition("finalize", "completed", TransitionType.ON_SUCCESS)
        .transition("finalize", "failed", TransitionType.ON_FAILURE)
        .build()
    )


# Runners


def run_basic() -> StateMachineInstance:
    """Run the basic workflow on a sample order and return the finished instance."""
    machine = build_basic_machine()
    instance = machine.create_instance("order-12345", BASIC_ORDER)

    print(f"Starting order processing workflow for instance: {instance.id}")
    instance.start()

    if instance.is_completed:
        print("✅ Order processing completed successfully!")
        print(f"Final state: {instance.current_state.id}")
        print(f"Order data: {instance.data}")
    elif instance.is_failed:
        print(f"❌ Order processing failed: {instance.error}")
    return instance


def run_advanced() -> dict[str, Any]:
    """Run the advanced workflow on three sample orders.

    Returns the instances, the collected metrics and the persisted listing.
    """
    print("=== Warden State Machine - Advanced Workflow Example ===")

    persister = InMemoryInstancePersister()
    event_bus = EventBus()
    metrics_listener = MetricsListener()
    event_bus.subscribe(metrics_listener)
    event_bus.subscribe(LoggingListener("info"))

    instances: list[StateMachineInstance] = []
    try:
        machine = build_advanced_machine(persister, event_bus)

        for number, order in enumerate(ADVANCED_ORDERS, start=1):
            print(f"\n=== Test Case {number}: {order['order_id']} ===")
            instance_id = f"test-instance-{number}"

            try:
                instance = machine.create_instance(instance_id, order)
            except Exception as exc:
                logger.error("Failed to create instance: %s", exc)
                continue
            instances.append(instance)

            print(f"Created instance: {instance.id}")
            print(f"Order type: {order['order_type']}")

            try:
                instance.start()
            except Exception as exc:
                print(f"Workflow execution failed: {exc}")

            print(f"Final state: {instance.current_state_id}")
            print(f"Status: {instance.status}")
            if instance.is_failed and instance.error is not None:
                print(f"Error: {instance.error}")

            if instance.is_completed:
                print("\nDemonstrating persistence...")
                try:
                    reloaded = machine.load_instance(instance_id)
                except Exception as exc:
                    logger.error("Failed to reload instance: %s", exc)
                else:
                    print(f"Reloaded instance state: {reloaded.current_state_id}")
                    print(f"Reloaded instance status: {reloaded.status}")

            time.sleep(0.1)

        event_bus.drain(1.0)

        print("\n=== Collected Metrics ===")
        metrics = metrics_listener.metrics
        for name, count in metrics.items():
            print(f"{name}: {count}")

        print("\n=== Instance Listing ===")
        listing = persister.list_instances(None, 10, 0)
        for snapshot in listing:
            print(
                f"Instance {snapshot.instance_id}: {snapshot.current_state_id} "
                f"(status: {snapshot.status})"
            )
    finally:
        event_bus.close()

    return {"instances": instances, "metrics": metrics, "listing": listing}


def main(argv: Sequence[str] | None = None) -> int:
    """Run one or both sample workflows."""
    parser = argparse.ArgumentParser(
        prog="warden-examples", description="Run the sample warden workflows."
    )
    parser.add_argument(
        "workflow",
        nargs="?",
        choices=("basic", "advanced", "all"),
        default="basic",
        help="which workflow to run (default: basic)",
    )
    args = parser.parse_args(argv)

    try:
        if args.workflow in ("basic", "all"):
            run_basic()
        if args.workflow in ("advanced", "all"):
            run_advanced()
    except Exception as exc:
        print(f"Workflow execution failed: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())