"""
Seed the database with a demo gateway and sample batch orders.

Creates:
  - 1 gateway ("tourism-demo") with a freshly generated RSA signing key
  - 2 batch orders (salary run and supplier payments), not yet registered
  - Edge cases: a 25-character IBAN and a zero amount in a third order,
    which the API would reject but which the seed stores for inspection

Run:
    python -m seed.seed_data
"""

import asyncio
import json
import sys
from pathlib import Path

from Crypto.PublicKey import RSA

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from grouppay.database import async_session, init_db
from grouppay.models.enums import ReasonCode
from grouppay.models.order import LineItem, PaymentOrder
from grouppay.providers.base import GatewayInfo
from grouppay.repository import GatewayRepository, OrderRepository

GATEWAY_ID = "tourism-demo"

GATEWAY_METADATA = {
    "ClientName": "Demo Treasury",
    "ClientId": "demo-client",
    "ClientSecret": "demo-secret",
    "ApiKey": "demo-api-key",
    "CustomerNumber": "1234567",
    "BranchCode": "101",
    "OrganizationCode": "ORG01",
}

ORDERS = [
    {
        "order_id": "ORD-SALARY-001",
        "description": "Monthly salary run",
        "lines": [
            ("IR062960000000100324200001", 150_000_000, "Ali Rezaei", ReasonCode.SALARY_DEPOSIT),
            ("IR062960000000100324200002", 120_000_000, "Sara Ahmadi", ReasonCode.SALARY_DEPOSIT),
            ("IR062960000000100324200003", 98_500_000, "Reza Karimi", ReasonCode.SALARY_DEPOSIT),
            ("IR062960000000100324200004", 110_000_000, "Maryam Hosseini", ReasonCode.SALARY_DEPOSIT),
        ],
    },
    {
        "order_id": "ORD-SUPPLIERS-001",
        "description": "Supplier invoices",
        "lines": [
            ("IR820540102680020817909002", 45_000_000, "Pars Office Supply", ReasonCode.STUFFS_PURCHASE),
            ("IR820540102680020817909003", 72_300_000, "Kish Logistics", ReasonCode.SERVICES_PURCHASE),
        ],
    },
    {
        "order_id": "ORD-INVALID-001",
        "description": "Malformed order for validation demos",
        "lines": [
            ("IR06296000000010032420000", 10_000_000, "Short Iban", ReasonCode.GENERAL_AND_DAILY_COSTS),
            ("IR062960000000100324200009", 0, "Zero Amount", ReasonCode.GENERAL_AND_DAILY_COSTS),
        ],
    },
]


async def seed():
    await init_db()

    async with async_session() as session:
        gateways = GatewayRepository(session)
        if await gateways.get(GATEWAY_ID) is None:
            key = RSA.generate(2048)
            await gateways.add(GatewayInfo(
                gateway_id=GATEWAY_ID,
                name="Tourism Bank (demo)",
                account_number="0101123456789",
                private_key_pem=key.export_key(format="PEM", pkcs=8).decode("ascii"),
                meta_data=json.dumps(GATEWAY_METADATA),
            ))
            print(f"Created gateway {GATEWAY_ID}")

        orders = OrderRepository(session)
        for entry in ORDERS:
            if await orders.get(entry["order_id"]):
                print(f"Skipping existing order {entry['order_id']}")
                continue
            order = PaymentOrder(
                order_id=entry["order_id"],
                gateway_id=GATEWAY_ID,
                description=entry["description"],
                line_items=[
                    LineItem(
                        row_number=row,
                        destination_iban=iban,
                        amount=amount,
                        recipient_name=name,
                        reason_code=reason,
                    )
                    for row, (iban, amount, name, reason) in enumerate(entry["lines"], start=1)
                ],
            )
            await orders.create(order)
            print(f"Created order {order.order_id} ({len(order.line_items)} lines, total {order.total_amount})")

        await session.commit()


if __name__ == "__main__":
    asyncio.run(seed())
