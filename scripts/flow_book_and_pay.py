#!/usr/bin/env python3
"""
Complete booking and payment flow script.

DO NOT ADD BUSINESS LOGIC HERE.
This script only orchestrates API calls.
All rules live in the backend.

Usage:
    python scripts/flow_book_and_pay.py --builder-id builder-demo --session-type-id <UUID>

Flow:
    1. Initialize booking
    2. Start scheduling
    3. Record the scheduled event (normally delivered by the scheduling webhook)
    4. Create checkout session (paid sessions only)
    5. Poll payment status until it settles
"""

import argparse
import asyncio
import json
import sys
import uuid

from app.client.flow import BookingFlowClient, ClientFlowError
from app.domain.booking_state import BookingEvent, BookingState

BASE_URL = "http://localhost:8000"


def print_step(step: int, title: str):
    """Print step header."""
    print(f"\n{'='*60}")
    print(f"STEP {step}: {title}")
    print("="*60)


def print_state(flow: BookingFlowClient):
    state = flow.state
    print(json.dumps(
        {
            "bookingId": state.booking_id,
            "step": state.step.value,
            "paymentSessionId": state.payment_session_id,
            "error": state.error_message,
            "retryable": state.retryable,
        },
        indent=2,
    ))


async def run(args) -> int:
    async with BookingFlowClient(args.base_url) as flow:
        try:
            print_step(1, "Initialize booking")
            await flow.initialize(args.builder_id, args.session_type_id, client_email=args.email)
            print_state(flow)

            print_step(2, "Start scheduling")
            await flow.dispatch(BookingEvent.INITIATE_SCHEDULING)
            print_state(flow)

            print_step(3, "Record scheduled event")
            event_id = uuid.uuid4().hex
            await flow.dispatch(
                BookingEvent.SCHEDULE_EVENT,
                {
                    "scheduling_event_uri": f"https://api.calendly.com/scheduled_events/{event_id}",
                    "scheduling_invitee_uri": (
                        f"https://api.calendly.com/scheduled_events/{event_id}/invitees/demo"
                    ),
                    "start_time": args.start_time,
                },
            )
            print_state(flow)

            if flow.state.step is BookingState.BOOKING_CONFIRMED:
                print("\nFree session: booking CONFIRMED without payment")
                return 0

            print_step(4, "Create checkout session")
            url = await flow.start_checkout(args.return_url)
            print(f"Checkout URL: {url}")
            print_state(flow)

            print_step(5, "Poll payment status")
            for _ in range(args.polls):
                status = await flow.check_payment()
                print(f"Payment status: {status} (booking {flow.state.step.value})")
                if status != "PENDING":
                    break
                await asyncio.sleep(args.interval)
        except ClientFlowError as e:
            print(f"ERROR ({e.status_code}, retryable={e.retryable}): {e.message}")
            print_state(flow)
            return 1

    print("\n" + "="*60)
    print(f"FLOW FINISHED IN {flow.state.step.value}")
    print("="*60)
    return 0


def main():
    parser = argparse.ArgumentParser(description="Complete booking and payment flow")
    parser.add_argument("--builder-id", required=True, help="Builder id")
    parser.add_argument("--session-type-id", required=True, help="Session type UUID")
    parser.add_argument("--email", default=None, help="Client email for notifications")
    parser.add_argument("--start-time", default="2026-11-02T15:00:00Z", help="Session start")
    parser.add_argument("--return-url", default=None, help="Checkout return URL")
    parser.add_argument("--base-url", default=BASE_URL, help="API base URL")
    parser.add_argument("--polls", type=int, default=30, help="Status checks before giving up")
    parser.add_argument("--interval", type=float, default=5.0, help="Seconds between checks")
    args = parser.parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
