import unittest

from dogwalking.webapp import create_app


class WebAppTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.app = create_app(":memory:", {"TESTING": True, "BUSINESS_NAME": "Test Walkers"})
        self.http = self.app.test_client()
        self.system = self.app.extensions["walking_system"]

        response = self.http.post(
            "/api/clients",
            json={"email": "jordan@example.com", "first_name": "Jordan", "last_name": "River", "balance": "10"},
        )
        self.assertEqual(response.status_code, 201)
        self.client_id = response.get_json()["id"]
        walker = self.http.post(
            "/api/walkers", json={"email": "sam@example.com", "first_name": "Sam", "last_name": "Smith"}
        ).get_json()
        self.walker_id = walker["id"]
        pet = self.http.post("/api/pets", json={"client_id": self.client_id, "name": "Rex"}).get_json()
        self.pet_id = pet["id"]

    def tearDown(self) -> None:
        self.system.close()

    def create_walk(self, **fields) -> dict:
        body = {
            "client_id": self.client_id,
            "pet_id": self.pet_id,
            "date": "2024-06-03",
            "time": "morning",
            "walker_id": self.walker_id,
            "billing_amount": "25.00",
        }
        body.update(fields)
        response = self.http.post("/api/walks", json=body)
        self.assertEqual(response.status_code, 201)
        return response.get_json()[0]

    def test_complete_walk_updates_balance(self) -> None:
        walk = self.create_walk()
        response = self.http.patch(f"/api/walks/{walk['id']}/status", json={"status": "completed"})
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.get_json()["is_balance_applied"])

        client = self.http.get(f"/api/clients/{self.client_id}").get_json()
        self.assertEqual(client["balance"], "35.00")
        self.assertEqual(client["pets"][0]["name"], "Rex")
        self.assertEqual(len(client["walks"]), 1)

        result = self.http.post("/api/walks/apply-balances").get_json()
        self.assertEqual(result["applied_count"], 0)

    def test_week_schedule(self) -> None:
        self.create_walk()
        self.create_walk(time="midday")
        body = self.http.get("/api/schedule/week?start=2024-06-03").get_json()
        self.assertEqual(body["start"], "2024-06-03")
        self.assertEqual(len(body["days"]), 7)
        self.assertEqual(body["days"][0]["total_walks"], 2)
        self.assertEqual(body["days"][0]["walker_counts"][0]["name"], "Sam")

        day = self.http.get("/api/schedule/day?date=2024-06-03&walker=Sam").get_json()
        self.assertEqual(len(day), 2)

    def test_bad_input_returns_400(self) -> None:
        response = self.http.get("/api/schedule/week?start=whenever")
        self.assertEqual(response.status_code, 400)
        self.assertIn("Invalid date", response.get_json()["message"])
        self.assertEqual(self.http.post("/api/walks", json={"client_id": self.client_id}).status_code, 400)
        self.assertEqual(self.http.get("/api/schedule/day").status_code, 400)

    def test_missing_records_return_404(self) -> None:
        self.assertEqual(self.http.get("/api/clients/999").status_code, 404)
        self.assertEqual(self.http.get("/api/walks/999").status_code, 404)

    def test_payments_and_audit(self) -> None:
        response = self.http.post(f"/api/clients/{self.client_id}/payments", json={"amount": "4.50"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["balance"], "5.50")
        self.assertEqual(self.http.get("/api/balances/audit").get_json(), [])

    def test_invoice_download(self) -> None:
        walk = self.create_walk()
        self.http.patch(f"/api/walks/{walk['id']}/status", json={"status": "completed"})
        response = self.http.get(f"/api/clients/{self.client_id}/invoice")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.mimetype, "application/pdf")
        self.assertTrue(response.data.startswith(b"%PDF"))

        summary = self.http.get(f"/api/clients/{self.client_id}/invoice?format=json").get_json()
        self.assertEqual(summary["total"], "$25.00")
        self.assertEqual(summary["lines"][0]["pet"], "Rex")

    def test_update_completed_and_test_sample(self) -> None:
        self.create_walk(date="2020-01-06")
        self.create_walk(date="2099-01-05")
        body = self.http.post("/api/walks/update-completed").get_json()
        self.assertEqual(body["completed_count"], 1)
        self.assertEqual(body["balance"]["applied_count"], 1)

        sample = self.http.post("/api/walks/mark-test-walks-completed").get_json()
        self.assertEqual(sample["marked_count"], 1)
        self.assertEqual(self.http.post("/api/walks/resume-credits").get_json()["credited_count"], 0)

    def test_messages(self) -> None:
        users = self.http.get("/api/users").get_json()
        sender, receiver = users[0]["id"], users[1]["id"]
        created = self.http.post(
            "/api/messages", json={"sender_id": sender, "receiver_id": receiver, "content": "Hello"}
        )
        self.assertEqual(created.status_code, 201)
        listed = self.http.get(f"/api/messages?user_id={receiver}").get_json()
        self.assertEqual(len(listed), 1)
        read = self.http.post(f"/api/messages/{created.get_json()['id']}/read").get_json()
        self.assertEqual(read["is_read"], 1)

    def test_failed_credit_is_reported(self) -> None:
        walk = self.create_walk()
        self.system.conn.execute("DROP TABLE balance_entries")
        self.system.walks.mark_completed(walk["id"])
        response = self.http.post("/api/walks/apply-balances")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["failed"], [walk["id"]])

    def test_unreadable_store_returns_503(self) -> None:
        self.system.conn.execute("ALTER TABLE walks RENAME TO walks_archive")
        response = self.http.get("/api/schedule/week")
        self.assertEqual(response.status_code, 503)
        self.assertIn("unavailable", response.get_json()["message"])


    def test_malformed_fields_return_400(self) -> None:
        cases = [
            ("/api/walks", {"client_id": self.client_id, "pet_id": self.pet_id, "date": "2024-06-03",
                            "time": "morning", "number_of_weeks": "two"}),
            ("/api/walks", {"client_id": "abc", "pet_id": self.pet_id, "date": "2024-06-03", "time": "morning"}),
            ("/api/clients", {"email": 42, "first_name": "Lee"}),
            ("/api/pets", {"client_id": self.client_id, "name": ["Rex"]}),
            ("/api/messages", {"sender_id": True, "receiver_id": 1, "content": "Hi"}),
        ]
        for url, body in cases:
            with self.subTest(url=url, body=body):
                response = self.http.post(url, json=body)
                self.assertEqual(response.status_code, 400)
                self.assertIn("must be", response.get_json()["message"])
        self.assertEqual(self.http.post("/api/walks", json=["not", "an", "object"]).status_code, 400)

    def test_edit_and_delete_walk(self) -> None:
        walk = self.create_walk()
        response = self.http.put(
            f"/api/walks/{walk['id']}", json={"date": "2024-06-05", "time": "midday", "walker_id": None}
        )
        self.assertEqual(response.status_code, 200)
        body = response.get_json()
        self.assertEqual((body["date"], body["time"], body["walker_id"]), ("2024-06-05", "midday", None))
        self.assertEqual(
            self.http.put(f"/api/walks/{walk['id']}", json={"status": "completed"}).status_code, 400
        )
        self.assertEqual(self.http.delete(f"/api/walks/{walk['id']}").get_json()["success"], True)
        self.assertEqual(self.http.get(f"/api/walks/{walk['id']}").status_code, 404)

        done = self.create_walk()
        self.http.patch(f"/api/walks/{done['id']}/status", json={"status": "completed"})
        self.assertEqual(self.http.put(f"/api/walks/{done['id']}", json={"notes": "late"}).status_code, 400)
        self.assertEqual(self.http.delete(f"/api/walks/{done['id']}").status_code, 400)

    def test_walker_walks_and_payouts(self) -> None:
        walk = self.create_walk()
        self.create_walk(walker_id=None)
        self.http.patch(f"/api/walks/{walk['id']}/status", json={"status": "completed"})
        walks = self.http.get(f"/api/walkers/{self.walker_id}/walks").get_json()
        self.assertEqual([row["id"] for row in walks], [walk["id"]])
        completed = self.http.get("/api/walks?status=completed").get_json()
        self.assertEqual([row["id"] for row in completed], [walk["id"]])

        response = self.http.post(
            f"/api/walkers/{self.walker_id}/payments",
            json={"amount": "20.00", "payment_date": "2024-06-10", "payment_method": "bank"},
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(len(response.get_json()["settled_earnings"]), 1)
        unpaid = self.http.get(f"/api/walkers/{self.walker_id}/earnings?unpaid=true").get_json()
        self.assertEqual(unpaid, [])
        payments = self.http.get(f"/api/walkers/{self.walker_id}/payments").get_json()
        self.assertEqual([(row["amount"], row["method"]) for row in payments], [("20.00", "bank")])
        self.assertEqual(self.http.post("/api/walkers/999/payments", json={"amount": "5"}).status_code, 404)

    def test_upcoming_walks(self) -> None:
        self.create_walk(date="2020-01-06")
        future = self.create_walk(date="2099-01-05", number_of_weeks=3)
        upcoming = self.http.get("/api/walks/upcoming?limit=2").get_json()
        self.assertEqual([row["date"] for row in upcoming], ["2099-01-05", "2099-01-12"])
        self.assertEqual(upcoming[0]["id"], future["id"])

    def test_unread_message_count(self) -> None:
        users = self.http.get("/api/users").get_json()
        sender, receiver = users[0]["id"], users[1]["id"]
        self.http.post("/api/messages", json={"sender_id": sender, "receiver_id": receiver, "content": "Hi"})
        self.assertEqual(self.http.get(f"/api/users/{receiver}/unread-messages").get_json(), {"count": 1})
        self.assertEqual(self.http.get(f"/api/users/{sender}/unread-messages").get_json(), {"count": 0})
        self.assertEqual(self.http.get("/api/users/999/unread-messages").status_code, 404)


if __name__ == "__main__":
    unittest.main()
