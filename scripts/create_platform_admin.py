from __future__ import annotations

import argparse
import asyncio
import sys

from gympass.core.logging import configure_logging
from gympass.persistence.db import (
    dispose_registry_engine,
    get_registry_engine,
    get_registry_sessionmaker,
    init_registry_schema,
)
from gympass.persistence.repos.tenants import TenantRegistry
from gympass.services.credentials import PasswordHasher, generate_temp_password


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create a platform administrator")
    parser.add_argument("--email", required=True, help="Admin login email")
    parser.add_argument("--name", required=True, help="Display name")
    parser.add_argument("--password", default=None, help="Initial password; generated when omitted")
    return parser


async def _create_admin(args: argparse.Namespace) -> int:
    password = args.password or generate_temp_password()
    await init_registry_schema(get_registry_engine())
    try:
        registry = TenantRegistry(get_registry_sessionmaker())
        password_hash = await PasswordHasher().hash(password)
        admin = await registry.create_platform_admin(args.email, password_hash, args.name)
    finally:
        await dispose_registry_engine()

    print("Platform admin created:")
    print(f"  id: {admin.id}")
    print(f"  email: {admin.email}")
    if not args.password:
        print(f"  temporary_password: {password}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_create_admin(args))
    except Exception as exc:  # noqa: BLE001 - surface bootstrap failures clearly
        print(f"create_platform_admin failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
