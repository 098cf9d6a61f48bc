import httpx
import asyncio
import uuid
from app.middleware.auth import create_access_token


BASE_URL = "http://localhost:8000"

CONNAUGHT_PLACE = {"address": "Connaught Place, New Delhi", "lat": 28.6315, "lng": 77.2167}
CYBER_CITY = {"address": "Cyber City, Gurugram", "lat": 28.4950, "lng": 77.0895}


async def safe_request(resp: httpx.Response, step: str):
    """Print response + fail loudly if error"""
    print(f"{step}: {resp.status_code}")

    try:
        print(resp.json())
    except Exception:
        print(resp.text)

    resp.raise_for_status()


async def main():

    async with httpx.AsyncClient(timeout=30.0) as client:

        # ---------------------------------------------------
        print("\n1️⃣ Checking Health...")
        resp = await client.get(f"{BASE_URL}/health")
        await safe_request(resp, "Health")

        # ---------------------------------------------------
        print("\n2️⃣ Registering Driver...")
        driver_payload = {
            "name": "Test Driver",
            "phone": f"+91{uuid.uuid4().int % 10000000000:010d}",
            "category": "sedan",
        }
        resp = await client.post(f"{BASE_URL}/v1/drivers", json=driver_payload)
        await safe_request(resp, "Register Driver")
        driver_id = resp.json()["id"]

        # ---------------------------------------------------
        print("\n3️⃣ Generating Tokens...")
        rider_id = str(uuid.uuid4())
        driver_headers = {"Authorization": f"Bearer {create_access_token(driver_id, role='driver')}"}
        rider_headers = {"Authorization": f"Bearer {create_access_token(rider_id, role='rider')}"}

        # ---------------------------------------------------
        print("\n4️⃣ Driver sends location and goes online...")
        resp = await client.post(
            f"{BASE_URL}/v1/drivers/{driver_id}/location",
            json={"lat": 28.6330, "lng": 77.2190},
            headers=driver_headers,
        )
        await safe_request(resp, "Send Location")
        resp = await client.patch(
            f"{BASE_URL}/v1/drivers/{driver_id}/status",
            params={"new_status": "available"},
            headers=driver_headers,
        )
        await safe_request(resp, "Driver Online")

        # ---------------------------------------------------
        print("\n5️⃣ Rider creates ride...")
        resp = await client.post(
            f"{BASE_URL}/v1/rides",
            json={"pickup": CONNAUGHT_PLACE, "drop": CYBER_CITY, "category": "sedan", "payment_mode": "upi"},
            headers={**rider_headers, "Idempotency-Key": str(uuid.uuid4())},
        )
        await safe_request(resp, "Create Ride")
        ride = resp.json()
        ride_id, otp = ride["id"], ride["otp"]

        # ---------------------------------------------------
        print("\n6️⃣ Driver accepts the offer...")
        for _ in range(20):
            resp = await client.post(
                f"{BASE_URL}/v1/drivers/{driver_id}/offers/{ride_id}",
                json={"accepted": True},
                headers=driver_headers,
            )
            await safe_request(resp, "Offer Response")
            if resp.json()["delivered"]:
                break
            await asyncio.sleep(0.5)

        await asyncio.sleep(1)
        resp = await client.get(f"{BASE_URL}/v1/rides/{ride_id}", headers=rider_headers)
        await safe_request(resp, "Ride Assigned")

        # ---------------------------------------------------
        print("\n7️⃣ Driver arrives and starts the ride...")
        for step, body in (
            ("Driver Arrived", {"status": "DRIVER_ARRIVED"}),
            ("Ride Started", {"status": "RIDE_STARTED", "otp": otp}),
        ):
            resp = await client.patch(
                f"{BASE_URL}/v1/rides/{ride_id}/status", json=body, headers=driver_headers
            )
            await safe_request(resp, step)

        # ---------------------------------------------------
        print("\n8️⃣ Completing Ride...")
        resp = await client.post(
            f"{BASE_URL}/v1/rides/{ride_id}/complete",
            json={"final_location": CYBER_CITY},
            headers=driver_headers,
        )
        await safe_request(resp, "Complete Ride")

        # ---------------------------------------------------
        print("\n9️⃣ Rider confirms payment...")
        resp = await client.post(
            f"{BASE_URL}/v1/payments/{ride_id}/confirm",
            headers={**rider_headers, "Idempotency-Key": str(uuid.uuid4())},
            json={"psp_ref": f"pay_{uuid.uuid4().hex[:12]}", "success": True},
        )
        await safe_request(resp, "Payment")

        print("\n✅ FLOW COMPLETED SUCCESSFULLY")


if __name__ == "__main__":
    asyncio.run(main())
