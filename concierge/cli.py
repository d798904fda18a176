"""CLI entry point for the tenant-concierge package."""

from __future__ import annotations

import logging
import platform
import shutil
import sys

MIN_PYTHON = (3, 10)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _print_setup_banner(port: int, *, for_startup: bool = True) -> None:
    """Print .env guidance. If for_startup, lead with the 'started' line instead of the header."""
    base = f"http://localhost:{port}"
    print()
    if for_startup:
        print("✅ Tenant concierge started")
    else:
        print("Tenant Concierge — Setup")
    print()
    print("Docs:     {}/docs".format(base))
    print("Health:   {}/health".format(base))
    print("Chat:     POST {}/chat".format(base))
    print()
    print("────────────────────────────────────────────")
    print("Create a .env file in this folder (or edit it if you already have one).")
    print()
    print("   DB_PATH=./data/concierge.db")
    print("   ENCRYPTION_KEY=<output of: concierge generate-key>")
    print("   JWT_SECRET=<shared secret for tenant session tokens>")
    print()
    print("Register an agent for a tenant with POST /agent-configs. Plaintext")
    print("credentialRef values are encrypted with ENCRYPTION_KEY on write; to")
    print("pre-encrypt a key yourself run: concierge encrypt-key <secret>")
    print("Use provider 'stub' to try the service without any API key.")
    print()


def _python_version_str() -> str:
    return ".".join(str(part) for part in sys.version_info[:3])


def _print_help() -> None:
    print("Tenant Concierge CLI")
    print()
    print("Usage:")
    print("  concierge                     Start the HTTP server")
    print("  concierge serve               Start the HTTP server")
    print("  concierge setup               Print setup/env guidance")
    print("  concierge doctor              Print install/environment diagnostics")
    print("  concierge generate-key        Print a new ENCRYPTION_KEY")
    print("  concierge encrypt-key <secret>")
    print("                                Encrypt a credential with ENCRYPTION_KEY")
    print()


def _print_doctor() -> None:
    from .config import get_settings
    from .crypto import CredentialCipher

    settings = get_settings()
    print("Tenant Concierge Doctor")
    print()
    print(f"Platform: {platform.platform()}")
    print(f"Python:   {_python_version_str()}")
    print(f"Exe:      {sys.executable}")
    print(f"In venv:  {'yes' if sys.prefix != sys.base_prefix else 'no'}")
    print(f"PATH bin: {shutil.which('concierge') or 'not found'}")
    print(f"Database: {'postgres' if settings.database_url else 'sqlite ' + settings.db_path}")
    print(f"Crypto:   {'ENCRYPTION_KEY set' if CredentialCipher(settings.encryption_key).configured else 'ENCRYPTION_KEY missing'}")
    print(f"Auth:     {'JWT' if settings.jwt_secret else 'static token' if settings.auth_token else 'disabled'}")
    if sys.version_info < MIN_PYTHON:
        print(f"Issue: Python is below required minimum {MIN_PYTHON[0]}.{MIN_PYTHON[1]}.")


def _encrypt_key(secret: str) -> int:
    from .config import get_settings
    from .crypto import CredentialCipher
    from .errors import CredentialError

    cipher = CredentialCipher(get_settings().encryption_key)
    try:
        print(cipher.encrypt(secret))
    except CredentialError as exc:
        print(f"Error: {exc}. Run 'concierge generate-key' and set ENCRYPTION_KEY.", file=sys.stderr)
        return 2
    return 0


def main() -> None:
    """Run the server or handle setup/doctor/key commands."""
    from .config import get_settings

    settings = get_settings()
    _configure_logging(settings.log_level)

    if len(sys.argv) > 1:
        subcommand = sys.argv[1].strip().lower()
        if subcommand in {"-h", "--help", "help"}:
            _print_help()
            sys.exit(0)
        if subcommand == "setup":
            _print_setup_banner(port=settings.http_port, for_startup=False)
            sys.exit(0)
        if subcommand == "doctor":
            _print_doctor()
            sys.exit(0)
        if subcommand == "generate-key":
            from .crypto import CredentialCipher

            print(CredentialCipher.generate_key())
            sys.exit(0)
        if subcommand == "encrypt-key":
            if len(sys.argv) < 3:
                print("Usage: concierge encrypt-key <secret>", file=sys.stderr)
                sys.exit(2)
            sys.exit(_encrypt_key(sys.argv[2]))
        if subcommand != "serve":
            print(f"Unknown command: {subcommand}", file=sys.stderr)
            _print_help()
            sys.exit(2)

    import uvicorn

    _print_setup_banner(port=settings.http_port, for_startup=True)

    uvicorn.run(
        "concierge.main:app",
        host=settings.http_host,
        port=settings.http_port,
        log_level=settings.log_level,
        factory=False,
    )


if __name__ == "__main__":
    main()
    sys.exit(0)
