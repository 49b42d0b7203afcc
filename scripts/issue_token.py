"""Issue a device token for a paired client.

Prints a JWT signed with JWT_SECRET that the client sends in its `auth`
frame. The device id must also be listed in DEVICE_IDS for the gateway to
accept it:

  python scripts/issue_token.py my-phone --name "Pixel 8"
"""

import argparse

from agent_gateway.auth import TokenVerifier
from agent_gateway.config import GatewaySettings


def issue_token(device_id: str, device_name: str | None) -> str:
    settings = GatewaySettings()
    if device_id not in settings.device_ids:
        print(f"Warning: {device_id} is not in DEVICE_IDS; the gateway will reject it.")
    verifier = TokenVerifier(settings.jwt_secret, settings.jwt_expires_days)
    return verifier.sign_token(device_id, device_name)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Issue an agent gateway device token")
    parser.add_argument("device_id")
    parser.add_argument("--name", dest="device_name")
    args = parser.parse_args()

    print(issue_token(args.device_id, args.device_name))
