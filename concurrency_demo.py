"""Concurrency demo: several mechanics try to accept the same request at once.
Exactly one accept should succeed; the rest get 409.
This runs in-process and doesn't require the server to be started separately.
Run: python concurrency_demo.py
"""
import asyncio
from main import app
from db import init_db, get_session
from models import Customer, Mechanic
import dispatch
import httpx


async def run():
    init_db()
    session = get_session()
    customer = Customer(name="demo customer")
    mechanics = [Mechanic(name=f"demo mechanic {i}") for i in range(5)]
    session.add_all([customer] + mechanics)
    session.commit()
    session.refresh(customer)
    ids = []
    for m in mechanics:
        session.refresh(m)
        ids.append(m.id)
    req = dispatch.create_request(customer.id, "sedan", "flat tyre", lat=0.35, lng=32.58)

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        tasks = [client.post(f"/requests/{req.id}/accept", json={"mechanic_id": mid}) for mid in ids]
        res = await asyncio.gather(*tasks)
        for r in res:
            print(r.status_code, r.json())


if __name__ == "__main__":
    asyncio.run(run())
