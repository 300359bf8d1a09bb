"""Credit a completed trip to a referred user's referral.

Replays a trip-completion event by hand, e.g. after the booking service
dropped one.

Usage:
    python scripts/record_trip.py <referred_user_id> <trip_id>
"""

import asyncio
import sys
import uuid

from app.config import program_config
from app.database import async_session
from app.services.errors import ReferralError
from app.services.progress import ProgressTracker


async def record_trip(referred_id: uuid.UUID, trip_id: str) -> int:
    async with async_session() as db:
        tracker = ProgressTracker(db, program_config)
        try:
            result = await tracker.record_trip(referred_id, trip_id)
        except ReferralError as e:
            print(f"Error: {e}")
            return 1

    if not result.counted:
        print(f"Trip {trip_id} not counted: {result.reason}")
        return 1
    print(f"Trip {trip_id} counted: referral {result.referral_id} now at {result.trips_completed} trips")
    for reward in result.rewards:
        print(f"  reward issued: {reward.id} ({reward.amount} {reward.currency})")
    return 0


def main() -> None:
    if len(sys.argv) != 3:
        print("Usage: python scripts/record_trip.py <referred_user_id> <trip_id>")
        sys.exit(1)

    try:
        referred_id = uuid.UUID(sys.argv[1])
    except ValueError:
        print(f"Error: '{sys.argv[1]}' is not a valid user id")
        sys.exit(1)

    sys.exit(asyncio.run(record_trip(referred_id, sys.argv[2])))


if __name__ == "__main__":
    main()
