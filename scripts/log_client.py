"""
Sample Log Client

Shows how an application sends logs to the Log Chain Service and checks
its chain. Run against a live service:

    python scripts/log_client.py --api-url http://localhost:8000 --api-key <key>
"""

import argparse
import sys
from typing import Any, Dict, Optional

import httpx


class LogChainClient:
    """
    Client for submitting logs to the Log Chain Service.
    """

    def __init__(self, api_url: str, api_key: str, timeout: float = 30.0):
        """
        Initialize the client.

        Args:
            api_url: Base URL of the service
            api_key: The application's API key
            timeout: Request timeout in seconds
        """
        self.api_url = api_url.rstrip('/')
        self.client = httpx.Client(
            base_url=f"{self.api_url}/api/v1",
            headers={"X-API-Key": api_key},
            timeout=timeout
        )

    def submit(self, log_type: str, payload: Any) -> dict:
        """
        Append a log and wait until it is stored.

        Raises:
            httpx.HTTPError: On API errors
        """
        response = self.client.post("/logs", json={"log_type": log_type, "payload": payload})
        response.raise_for_status()
        return response.json()["data"]

    def queue(self, log_type: str, payload: Any) -> str:
        """Queue a log for asynchronous appending. Returns the job ID."""
        response = self.client.post("/logs/queue", json={"log_type": log_type, "payload": payload})
        response.raise_for_status()
        return response.json()["data"]["job_id"]

    def job(self, job_id: str) -> dict:
        response = self.client.get(f"/logs/queue/{job_id}")
        response.raise_for_status()
        return response.json()["data"]

    def list(self, page: int = 1, limit: int = 20, **filters: Optional[str]) -> Dict[str, Any]:
        params = {"page": page, "limit": limit}
        params.update({k: v for k, v in filters.items() if v is not None})
        response = self.client.get("/logs", params=params)
        response.raise_for_status()
        return response.json()

    def verify(self, start_seq: Optional[int] = None, end_seq: Optional[int] = None) -> dict:
        """Ask the service to verify this application's chain."""
        params = {}
        if start_seq is not None:
            params["start_seq"] = str(start_seq)
        if end_seq is not None:
            params["end_seq"] = str(end_seq)
        response = self.client.get("/logs/verify-chain", params=params)
        response.raise_for_status()
        return response.json()["data"]

    def close(self):
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="Send sample logs and verify the chain")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--api-key", required=True)
    parser.add_argument("--count", type=int, default=3, help="Number of logs to send")
    args = parser.parse_args()

    with LogChainClient(args.api_url, args.api_key) as client:
        for i in range(args.count):
            stored = client.submit(
                "AUTH_LOGIN",
                {"user_id": f"user_{i}", "ip": "192.168.1.100", "details": {"method": "password"}}
            )
            print(f"Stored log seq={stored['seq']} id={stored['id']}")

        result = client.verify()
        print(f"\nChain valid: {result['valid']} ({result['total_logs']} logs)")
        for error in result["errors"]:
            print(f"  - {error}")

    return 0 if result["valid"] else 1


if __name__ == "__main__":
    sys.exit(main())
