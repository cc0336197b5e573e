#!/usr/bin/env python3
"""Create or update a session type for local testing."""

import asyncio
import uuid

from sqlalchemy import select

from app.database import async_session_maker
from app.models.session_type import SessionType


async def create_session_type(
    builder_id: str = "builder-demo",
    title: str = "Intro call",
    price: int = 5000,
    currency: str = "usd",
    duration_minutes: int = 30,
) -> None:
    """Create a session type unless one with the same builder and title exists."""
    async with async_session_maker() as session:
        result = await session.execute(
            select(SessionType).where(
                SessionType.builder_id == builder_id,
                SessionType.title == title,
            )
        )
        existing = result.scalar_one_or_none()

        if existing:
            existing.price = price
            existing.currency = currency
            existing.duration_minutes = duration_minutes
            existing.is_active = True
            await session.commit()
            print(f"Updated session type: {existing.id}")
        else:
            session_type = SessionType(
                id=uuid.uuid4(),
                builder_id=builder_id,
                title=title,
                price=price,
                currency=currency,
                duration_minutes=duration_minutes,
                is_active=True,
            )
            session.add(session_type)
            await session.commit()
            print(f"Created session type: {session_type.id}")

        print(f"Builder: {builder_id}")
        print(f"Price:   {price} {currency} ({'free' if price <= 0 else 'paid'})")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Create a session type")
    parser.add_argument("--builder-id", default="builder-demo", help="Builder id")
    parser.add_argument("--title", default="Intro call", help="Session title")
    parser.add_argument("--price", type=int, default=5000, help="Price in minor units (0 = free)")
    parser.add_argument("--currency", default="usd", help="ISO currency code")
    parser.add_argument("--duration", type=int, default=30, help="Duration in minutes")

    args = parser.parse_args()

    asyncio.run(
        create_session_type(
            builder_id=args.builder_id,
            title=args.title,
            price=args.price,
            currency=args.currency,
            duration_minutes=args.duration,
        )
    )
