from locust import HttpUser, task, between
import random


class MemberUser(HttpUser):
    """Registers, buys a plan and polls the order the way the payment page does.

    Run against a server whose gateway is pointed at the Alipay sandbox.
    """
    wait_time = between(0.5, 2)

    def on_start(self):
        email = f"load_{random.randint(1, 1_000_000_000)}@example.com"
        r = self.client.post("/api/auth/register", json={"email": email, "password": "load-test-pw"})
        self.user_id = None
        self.order_ids = []
        if r.status_code == 201:
            body = r.json()
            self.user_id = body["user_id"]
            self.client.headers["Authorization"] = f"Bearer {body['access_token']}"

    @task(1)
    def create_order(self):
        if not self.user_id:
            return
        r = self.client.post(
            "/api/alipay/create-order",
            json={"userId": self.user_id, "amount": "99", "orderType": "annual", "subject": "Annual membership"},
        )
        if r.status_code == 201:
            self.order_ids.append(r.json()["orderId"])
        elif r.status_code == 502:
            order_id = (r.json().get("detail") or {}).get("orderId")
            if order_id:
                self.order_ids.append(order_id)

    @task(5)
    def poll_order(self):
        if not self.order_ids:
            return
        order_id = random.choice(self.order_ids)
        self.client.get(f"/api/orders/{order_id}", name="/api/orders/[id]")

    @task(2)
    def check_entitlements(self):
        if self.user_id:
            self.client.get("/api/entitlements", params={"feature": "image"})
