"""
CLI utility to mint a host login cookie for local testing.

The authorization endpoint never authenticates users itself: it trusts the
host platform's login, which it reads from a signed JWT cookie (name set by
MCP_LOGIN_COOKIE_NAME, default "mcp_login"). In production the host sets that
cookie after its own login flow. For local development, this script plays the
host and mints a cookie value with configurable claims.

Usage examples:

    # Log in as alice for 8 hours (default secret)
    python -m scripts.generate_token --sub alice

    # Custom expiration (2 hours)
    python -m scripts.generate_token --sub alice --exp-hours 2

    # Custom secret (must match MCP_JWT_SECRET_KEY on the server)
    python -m scripts.generate_token --sub alice --secret my-prod-secret

    # Expired login (the authorize endpoint treats it as "not logged in")
    python -m scripts.generate_token --sub alice --exp-hours -1

Then open the authorize URL with the cookie set, e.g.:

    curl -i "http://localhost:8080/oauth/authorize?client_id=...&redirect_uri=...&response_type=code&code_challenge=..." \\
      -H "Cookie: mcp_login=<token>"
"""

import argparse
import datetime

import jwt

from mcp_gateway.config import settings


def generate_login_token(
    subject: str,
    secret: str,
    algorithm: str = "HS256",
    exp_hours: float = 8.0,
) -> str:
    """
    Generate a signed login JWT naming the logged-in user.

    Args:
        subject: The "sub" claim - the host user id
        secret: The signing key (must match the server's MCP_JWT_SECRET_KEY)
        algorithm: JWT signing algorithm (default: HS256)
        exp_hours: Hours until expiration (negative = already expired)
    """
    now = datetime.datetime.now(datetime.timezone.utc)
    payload = {
        "sub": subject,
        "iat": now,
        "exp": now + datetime.timedelta(hours=exp_hours),
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Mint a host login cookie for the MCP gateway's authorize endpoint.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Log in as alice:
    %(prog)s --sub alice

  Expired login (for testing):
    %(prog)s --sub alice --exp-hours -1

  Custom secret:
    %(prog)s --sub alice --secret my-secret
        """,
    )

    parser.add_argument("--sub", required=True, help="Host user id to log in as (e.g., 'alice')")
    parser.add_argument(
        "--secret",
        default=settings.jwt_secret_key,
        help="JWT signing secret (must match server's MCP_JWT_SECRET_KEY)",
    )
    parser.add_argument(
        "--algorithm",
        default=settings.jwt_algorithm,
        help="JWT signing algorithm (default: HS256)",
    )
    parser.add_argument(
        "--exp-hours",
        type=float,
        default=8.0,
        help="Hours until the login expires (negative = already expired, default: 8)",
    )

    args = parser.parse_args()

    token = generate_login_token(
        subject=args.sub,
        secret=args.secret,
        algorithm=args.algorithm,
        exp_hours=args.exp_hours,
    )

    exp_time = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=args.exp_hours)

    print(f"Subject:    {args.sub}")
    print(f"Expires:    {exp_time.isoformat()}")
    print(f"Algorithm:  {args.algorithm}")
    print()
    print(f"Token: {token}")
    print()
    print("Send it as a cookie to the authorize endpoint:")
    print(f"  Cookie: {settings.login_cookie_name}={token}")


if __name__ == "__main__":
    main()
