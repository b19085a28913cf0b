#!/usr/bin/env python3
"""
tenantdb Demo - Shows tenant isolation on a shared store.

Two engines for two tenants share one in-memory backend, the same way two
apps share one hosted database project.
"""

import asyncio

from tenantdb import (
    ChangeEvent,
    Filter,
    InMemoryBackend,
    OrderBy,
    TenantDb,
    TenantPolicy,
)


async def main():
    print("=" * 60)
    print("tenantdb Demo - Isolation on a shared store")
    print("=" * 60)

    backend = InMemoryBackend()
    await backend.connect()

    bookbuddy = TenantDb(backend, TenantPolicy("bookbuddy"))
    otherapp = TenantDb(backend, TenantPolicy("otherapp"))

    # 1. Watch changes for bookbuddy only
    print("\n[Step 1] Subscribing to bookbuddy book changes...")

    def on_change(event: ChangeEvent) -> None:
        title = (event.new or event.old or {}).get("title")
        print(f"  ~ {event.type.name.lower()}: {title}")

    unsubscribe = bookbuddy.subscribe("books", on_change)

    # 2. Create books in both tenants
    print("\n[Step 2] Creating books...")
    dune, _ = await bookbuddy.create("books", {"title": "Dune", "author": "Herbert", "rating": 5})
    await bookbuddy.create("books", {"title": "Emma", "author": "Austen", "rating": 4})
    await otherapp.create("books", {"title": "Ulysses", "author": "Joyce", "rating": 3})
    print(f"  - Dune stamped with app_id={dune['app_id']}")

    # 3. Query
    print("\n[Step 3] Querying...")
    rows, error, count = await bookbuddy.fetch_all(
        "books",
        filters=[Filter("rating", "gte", 4)],
        order_by=OrderBy("title"),
    )
    print(f"  - bookbuddy sees {count} books: {[r['title'] for r in rows]}")
    rows, error, count = await otherapp.fetch_all("books")
    print(f"  - otherapp sees {count} books: {[r['title'] for r in rows]}")

    # 4. Cross-tenant access
    print("\n[Step 4] otherapp tries to touch bookbuddy's Dune...")
    _, error = await otherapp.fetch_by_id("books", dune["id"])
    print(f"  - fetch_by_id: {error.code}")
    _, error = await otherapp.update("books", dune["id"], {"title": "Stolen"})
    print(f"  - update:      {error.code}")
    _, error = await otherapp.remove("books", dune["id"])
    print(f"  - remove:      {error.code}")

    unsubscribe()
    await backend.close()
    print("\nDone.")


if __name__ == "__main__":
    asyncio.run(main())
