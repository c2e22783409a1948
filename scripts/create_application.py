"""
Script to register a new application with the Log Chain Service.

Prints the application's API key, which is shown only once.

    ADMIN_TOKEN=... python scripts/create_application.py --name "Billing" --slug billing
"""

import argparse
import os
import sys

import requests


def create_application(api_url: str, admin_token: str, name: str, slug: str,
                       domain: str = None, stack: str = "other") -> dict:
    """Register an application through the admin API."""
    response = requests.post(
        f"{api_url.rstrip('/')}/api/v1/applications",
        json={"name": name, "slug": slug, "domain": domain, "stack": stack},
        headers={"X-Admin-Token": admin_token},
        timeout=30.0
    )
    response.raise_for_status()
    return response.json()["data"]


def main() -> int:
    parser = argparse.ArgumentParser(description="Register an application")
    parser.add_argument("--api-url", default="http://localhost:8000")
    parser.add_argument("--admin-token", default=os.environ.get("ADMIN_TOKEN"))
    parser.add_argument("--name", required=True)
    parser.add_argument("--slug", required=True)
    parser.add_argument("--domain")
    parser.add_argument("--stack", default="other")
    args = parser.parse_args()

    if not args.admin_token:
        print("Admin token required (--admin-token or ADMIN_TOKEN)")
        return 2

    print(f"\n{'=' * 60}")
    print(f"Registering Application: {args.slug}")
    print(f"{'=' * 60}\n")

    try:
        data = create_application(
            args.api_url, args.admin_token, args.name, args.slug, args.domain, args.stack
        )
    except requests.exceptions.ConnectionError:
        print(f"Could not connect to API at {args.api_url}")
        return 1
    except requests.exceptions.HTTPError as e:
        print(f"Registration failed: {e.response.status_code} {e.response.text}")
        return 1

    print(f"Application ID: {data['id']}")
    print(f"Slug:           {data['slug']}")
    print(f"\n{'=' * 60}")
    print("API KEY (SAVE THIS SECURELY, IT WILL NOT BE SHOWN AGAIN)")
    print(f"{'=' * 60}")
    print(data["api_key"])

    return 0


if __name__ == "__main__":
    sys.exit(main())
