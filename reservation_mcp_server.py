from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from mcp.server.fastmcp import FastMCP

from room_booking import Actor, ReservationLifecycle, ReservationStatus, Role
from room_booking.config import Settings

MCP_ACTOR = Actor(user_id="mcp", role=Role.ADMIN)


def pending_reservations(lifecycle: ReservationLifecycle, room_id: str | None = None) -> list[dict[str, Any]]:
    records = lifecycle.list_reservations(MCP_ACTOR, room_id=room_id, status=ReservationStatus.PENDING)
    return [lifecycle.describe(record) for record in sorted(records, key=lambda record: (record.date, record.start_time))]


def schedule_for(lifecycle: ReservationLifecycle, room_id: str, date: str) -> list[dict[str, str]]:
    return [
        {
            "reservation_id": record.reservation_id,
            "start_time": record.start_time,
            "end_time": record.end_time,
            "status": record.status.value,
        }
        for record in lifecycle.room_schedule(room_id, date)
    ]


def build_server(
    data_dir: str | Path = "data",
    now_provider: Callable[[], datetime] | None = None,
) -> FastMCP:
    lifecycle = ReservationLifecycle.from_data_dir(data_dir, now_provider=now_provider)
    mcp = FastMCP(
        "Room Booking MCP Server",
        instructions="Read-only view of meeting rooms and reservation requests awaiting approval.",
        json_response=True,
    )

    @mcp.resource("reservation://rooms")
    async def list_rooms() -> list[dict[str, Any]]:
        """List bookable meeting rooms."""
        return [room.to_dict() for room in lifecycle.rooms.list_rooms()]

    @mcp.tool()
    def list_pending_reservations(room_id: str | None = None) -> list[dict[str, Any]]:
        """Return reservations awaiting approval, optionally filtered by room."""
        return pending_reservations(lifecycle, room_id)

    @mcp.tool()
    def pending_reservation_count() -> int:
        """Return how many reservations are awaiting approval."""
        return lifecycle.pending_count(MCP_ACTOR)

    @mcp.tool()
    def room_schedule(room_id: str, date: str) -> list[dict[str, str]]:
        """Return approved and pending reservations for a room on a YYYY-MM-DD date."""
        return schedule_for(lifecycle, room_id, date)

    return mcp


def main() -> None:
    build_server(Settings.from_env().data_dir).run()


if __name__ == "__main__":
    main()
