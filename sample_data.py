from db import init_db, get_session
from models import Customer, Mechanic
import dispatch
import random


def seed():
    init_db()
    session = get_session()
    center = (0.3476, 32.5825)  # Kampala approximate
    customers = [Customer(name=f"customer{i}", phone=f"07000000{i:02d}", car_type="sedan",
                          auth_id=f"cust-{i}") for i in range(1, 11)]
    mechanics = []
    for i in range(1, 6):
        # scatter mechanics within ~10km of the center
        mechanics.append(Mechanic(
            name=f"mechanic{i}",
            phone=f"07100000{i:02d}",
            auth_id=f"mech-{i}",
            specialization=random.choice(["engine", "tyres", "electrical"]),
            lat=center[0] + (random.random() - 0.5) * 0.18,
            lng=center[1] + (random.random() - 0.5) * 0.18,
            online=random.random() > 0.3,
        ))
    session.add_all(customers + mechanics)
    session.commit()
    for c in customers:
        session.refresh(c)
    for m in mechanics:
        session.refresh(m)
    for i in range(1, 21):
        c = customers[(i - 1) % len(customers)]
        m = random.choice(mechanics)
        dispatch.create_request(
            customer_id=c.id,
            car_type=random.choice(["sedan", "suv", "pickup"]),
            description=random.choice(["flat tyre", "won't start", "overheating"]),
            lat=center[0] + (random.random() - 0.5) * 0.1,
            lng=center[1] + (random.random() - 0.5) * 0.1,
            mechanic_id=m.id,
        )
    print("Seeded sample data")


if __name__ == "__main__":
    seed()
