"""
Rekey Command Line Interface.

Provides commands for running the rotation service, generating keypairs,
minting development bearer tokens, and printing configuration.
"""

import argparse
import json
import logging
import os
import sys

from rekey import config
from rekey.auth import TokenIssuer
from rekey.keys import generate_identity


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the HTTP service."""
    from rekey.server import main as serve

    serve(host=args.host, port=args.port)
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    """Print the effective configuration."""
    config.print_config()
    return 0


def cmd_keygen(args: argparse.Namespace) -> int:
    """Generate a new Ed25519 keypair."""
    pair = generate_identity()

    if args.env:
        print(f"export REKEY_ISSUER_PRIVATE_KEY='{pair.private_key_jwk}'")
        print(f"# Public Key (for REKEY_TRUSTED_ISSUERS): {pair.public_key_jwk}", file=sys.stderr)
    elif args.json:
        print(json.dumps({
            "kid": pair.kid,
            "privateKey": json.loads(pair.private_key_jwk),
            "publicKey": json.loads(pair.public_key_jwk),
        }, indent=2))
    else:
        print(f"kid: {pair.kid}")
        print("\n--- PRIVATE KEY (Keep Secret / Set as Env Var) ---")
        print(pair.private_key_jwk)
        print("\n--- PUBLIC KEY (Put this in REKEY_TRUSTED_ISSUERS) ---")
        print(pair.public_key_jwk)
    return 0


def cmd_token(args: argparse.Namespace) -> int:
    """Mint a bearer token for an owner."""
    private_key = args.key or os.getenv('REKEY_ISSUER_PRIVATE_KEY')
    if not private_key:
        print("Error: No private key. Use --key or set REKEY_ISSUER_PRIVATE_KEY", file=sys.stderr)
        return 1

    try:
        issuer = TokenIssuer(private_key, args.issuer, default_expiry_seconds=args.expires)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    token = issuer.issue(args.owner)
    if args.header:
        print(f"Authorization: Bearer {token}")
    else:
        print(token)
    return 0


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog='rekey',
        description='Rekey - signing-key rotation with alias continuity and rollback'
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose output')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # serve command
    p_serve = subparsers.add_parser('serve', help='Run the rotation HTTP service')
    p_serve.add_argument('--host', default=config.HOST, help='Bind address')
    p_serve.add_argument('--port', type=int, default=config.PORT, help='Bind port')

    # config command
    subparsers.add_parser('config', help='Print the effective configuration')

    # keygen command
    p_keygen = subparsers.add_parser('keygen', help='Generate an Ed25519 keypair')
    p_keygen.add_argument('--env', action='store_true', help='Output as environment variables')
    p_keygen.add_argument('--json', action='store_true', help='Output as JSON')

    # token command
    p_token = subparsers.add_parser('token', help='Mint a development bearer token')
    p_token.add_argument('owner', help='Owner id to place in the sub claim')
    p_token.add_argument('--issuer', default='rekey-dev', help='Issuer name (iss claim)')
    p_token.add_argument('--key', help='Issuer private key (JWK JSON)')
    p_token.add_argument('--expires', type=int, default=300, help='Lifetime in seconds')
    p_token.add_argument('--header', action='store_true', help='Output as an Authorization header')

    args = parser.parse_args()

    setup_logging(args.verbose)

    if args.command == 'serve':
        return cmd_serve(args)
    elif args.command == 'config':
        return cmd_config(args)
    elif args.command == 'keygen':
        return cmd_keygen(args)
    elif args.command == 'token':
        return cmd_token(args)
    else:
        parser.print_help()
        return 0


if __name__ == '__main__':
    sys.exit(main())
