"""Read-only views of the collaborator features the claims workflow depends on.

Place lookup, user accounts and check-ins belong to other features. The
workflow only needs the narrow contracts below; `SqliteDirectory` reads them
from the shared database.
"""

from __future__ import annotations

from typing import Protocol

import aiosqlite

from ownership.models import PlaceInfo, UserAccount


class PlaceDirectory(Protocol):
    async def get_place(self, db: aiosqlite.Connection, place_id: int) -> PlaceInfo | None:
        ...

    async def get_places(self, db: aiosqlite.Connection, place_ids: list[int]) -> dict[int, PlaceInfo]:
        ...


class UserDirectory(Protocol):
    async def get_user(self, db: aiosqlite.Connection, user_id: str) -> UserAccount | None:
        ...


class ActivityHistory(Protocol):
    async def count_checkins(
        self,
        db: aiosqlite.Connection,
        user_id: str,
        place_id: int,
        *,
        since_iso: str | None = None,
    ) -> int:
        ...

    async def ip_seen_in_region(
        self,
        db: aiosqlite.Connection,
        ip_address: str,
        region: str,
        *,
        exclude_claim_id: int | None = None,
    ) -> bool:
        ...


def _place_from_row(row: aiosqlite.Row) -> PlaceInfo:
    return PlaceInfo(
        id=int(row["id"]),
        name=str(row["name"]),
        latitude=row["latitude"],
        longitude=row["longitude"],
        region=row["region"],
    )


class SqliteDirectory:
    """Place, user and check-in reads over the shared tables."""

    async def get_place(self, db: aiosqlite.Connection, place_id: int) -> PlaceInfo | None:
        async with db.execute(
            "SELECT id, name, latitude, longitude, region FROM places WHERE id = ?",
            (place_id,),
        ) as cur:
            row = await cur.fetchone()
        return _place_from_row(row) if row else None

    async def get_places(self, db: aiosqlite.Connection, place_ids: list[int]) -> dict[int, PlaceInfo]:
        if not place_ids:
            return {}
        placeholders = ",".join("?" for _ in place_ids)
        async with db.execute(
            f"SELECT id, name, latitude, longitude, region FROM places WHERE id IN ({placeholders})",
            tuple(place_ids),
        ) as cur:
            rows = await cur.fetchall()
        return {int(row["id"]): _place_from_row(row) for row in rows}

    async def get_user(self, db: aiosqlite.Connection, user_id: str) -> UserAccount | None:
        async with db.execute("SELECT id, email, created_at FROM users WHERE id = ?", (user_id,)) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        return UserAccount(id=str(row["id"]), email=row["email"], created_at=str(row["created_at"]))

    async def count_checkins(
        self,
        db: aiosqlite.Connection,
        user_id: str,
        place_id: int,
        *,
        since_iso: str | None = None,
    ) -> int:
        query = "SELECT COUNT(*) FROM checkins WHERE user_id = ? AND place_id = ?"
        params: tuple = (user_id, place_id)
        if since_iso:
            query += " AND created_at >= ?"
            params = (user_id, place_id, since_iso)
        async with db.execute(query, params) as cur:
            row = await cur.fetchone()
        return int(row[0] or 0)

    async def ip_seen_in_region(
        self,
        db: aiosqlite.Connection,
        ip_address: str,
        region: str,
        *,
        exclude_claim_id: int | None = None,
    ) -> bool:
        """True when the IP has a check-in, or another claim, at any place in `region`."""
        async with db.execute(
            """SELECT 1
                 FROM places p
                WHERE p.region = ?
                  AND (
                      EXISTS (SELECT 1 FROM checkins ch WHERE ch.place_id = p.id AND ch.ip_address = ?)
                      OR EXISTS (SELECT 1 FROM place_claims pc WHERE pc.place_id = p.id AND pc.ip_address = ? AND pc.id != ?)
                  )
                LIMIT 1""",
            (region, ip_address, ip_address, exclude_claim_id or 0),
        ) as cur:
            row = await cur.fetchone()
        return row is not None
