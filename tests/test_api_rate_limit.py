import unittest
from fastapi.testclient import TestClient
from app.main import create_app
from app.config import settings
from app.core.database import Database
from app.routers.api import limiter


class TestApiRateLimit(unittest.TestCase):
    def setUp(self):
        # Fresh app and in-memory storage for each test
        self.storage = Database(":memory:")
        self.app = create_app(storage=self.storage)

        # Ensure rate limiting is enabled for the test
        self.saved_limit = settings.rate_limit.game_requests
        settings.rate_limit.enabled = True
        settings.rate_limit.game_requests = "5/minute"
        limiter.reset()

    def tearDown(self):
        settings.rate_limit.game_requests = self.saved_limit
        limiter.reset()
        self.storage.close()

    def test_rate_limit_applied_to_flip(self):
        endpoint = "/api/games/flip"
        body = {"betAmount": "0.01", "selectedSide": "heads", "publicKey": "wallet-ratelimit"}

        with TestClient(self.app) as client:
            # The first 5 requests should succeed
            for i in range(5):
                response = client.post(endpoint, json=body)
                self.assertEqual(
                    response.status_code, 200,
                    f"Request {i+1}/6 should have succeeded, but got {response.status_code}."
                )

            # The 6th request should be rate-limited
            response = client.post(endpoint, json=body)
            self.assertEqual(
                response.status_code, 429,
                f"The 6th request should have been rate-limited (429), but got {response.status_code}."
            )

    def test_rejected_flips_still_count(self):
        body = {"betAmount": "-1", "selectedSide": "heads", "publicKey": "wallet-ratelimit"}

        with TestClient(self.app) as client:
            codes = [client.post("/api/games/flip", json=body).status_code for _ in range(6)]

        self.assertEqual(codes[:5], [400] * 5)
        self.assertEqual(codes[5], 429)


if __name__ == "__main__":
    unittest.main()
