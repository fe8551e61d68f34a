#!/usr/bin/env python3
"""
Wartungs-Skript: Baut den Suchindex aus der Primaerdatenbank neu auf.

Alle nicht geloeschten Nachrichten werden als upsert in die Outbox gestellt.
Mit --drain wird die Outbox direkt abgearbeitet, sonst uebernimmt das der
laufende Sync-Worker.

Verwendung:
    python reindex_search.py
    python reindex_search.py --drain
"""
import argparse
import asyncio
import logging

from parley.services.search_index import init_search_db
from parley.services.search_sync import SearchSyncWorker


async def reindex(drain: bool) -> None:
    await init_search_db()
    worker = SearchSyncWorker()
    queued = await worker.reindex_all()
    print(f"{queued} Nachrichten in die Outbox gestellt")

    if drain:
        total = 0
        while True:
            synced = await worker.drain()
            if not synced:
                break
            total += synced
        print(f"{total} Nachrichten indiziert")
        stats = await worker.stats()
        if stats["pending_upsert"] or stats["pending_delete"]:
            print(f"Noch offen: {stats}")


def main():
    parser = argparse.ArgumentParser(
        description="Baut den Parley-Suchindex neu auf"
    )
    parser.add_argument(
        "--drain",
        action="store_true",
        help="Outbox sofort abarbeiten statt auf den Worker zu warten",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    asyncio.run(reindex(args.drain))


if __name__ == "__main__":
    main()
