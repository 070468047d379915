"""
Command-line interface for AI Relay.

Sends one-off prompts through the dispatch layer, lists the supported
providers, and inspects the active configuration.
"""

import argparse
import asyncio
import base64
import json
import mimetypes
import sys
import uuid
from pathlib import Path
from typing import Optional, List

from .core.config import Config
from .core.config_manager import ConfigManager
from .core.exceptions import RelayError
from .core.logging_config import setup_logging
from .providers.gateway import AIGateway
from .providers.types import ImageAttachment


def _load_config(args: argparse.Namespace) -> Config:
    config_path = getattr(args, "config", None)
    if config_path:
        return ConfigManager(Path(config_path)).get_config()
    return ConfigManager().get_config()


def _read_image(path_str: str) -> ImageAttachment:
    path = Path(path_str)
    mime_type, _ = mimetypes.guess_type(path.name)
    data = base64.b64encode(path.read_bytes()).decode("ascii")
    return ImageAttachment(mime_type=mime_type or "image/png", base64_data=data)


def cmd_ask(args: argparse.Namespace) -> int:
    """Send a prompt to a provider and print the response."""
    try:
        config = _load_config(args)
        if args.verbose:
            config.log_level = "DEBUG"
        setup_logging(config, uuid.uuid4().hex)

        image = _read_image(args.image) if args.image else None
        gateway = AIGateway(config)

        response = asyncio.run(
            gateway.generate_response(
                args.prompt,
                provider=args.provider,
                api_keys=args.keys or None,
                model=args.model,
                temperature=args.temperature,
                max_tokens=args.max_tokens,
                image=image,
                base_url=args.base_url,
                timeout=args.timeout,
            )
        )
        print(response)
        return 0

    except RelayError as e:
        print(f"❌ {e.__class__.__name__}: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"❌ Could not read image: {e}", file=sys.stderr)
        return 1


def cmd_providers(args: argparse.Namespace) -> int:
    """List supported providers."""
    providers = AIGateway.describe_providers()

    if args.format == "json":
        print(json.dumps(providers, indent=2))
        return 0

    print("🤖 Supported providers:")
    print()
    for name, info in providers.items():
        key_note = "key required" if info["requires_key"] else "no key"
        image_note = ", image input" if info["accepts_image"] else ""
        print(
            f"   {name:12} {info['default_model']:35} "
            f"min interval {info['min_interval_ms']}ms, {key_note}{image_note}"
        )
    return 0


def cmd_config_show(args: argparse.Namespace) -> int:
    """Show current configuration command."""
    try:
        config = _load_config(args)
    except RelayError as e:
        print(f"❌ Failed to load configuration: {e}", file=sys.stderr)
        return 1

    config_dict = config.to_dict()
    if args.format == "json":
        print(json.dumps(config_dict, indent=2))
    else:
        print("📋 Current AI Relay Configuration:")
        print()
        for key, value in config_dict.items():
            print(f"   {key}: {value}")
    return 0


def cmd_config_validate(args: argparse.Namespace) -> int:
    """Validate configuration command."""
    try:
        manager = ConfigManager(Path(args.config)) if args.config else ConfigManager()
        errors = manager.validate_config()
    except RelayError as e:
        print(f"❌ Configuration validation failed: {e}", file=sys.stderr)
        return 1

    if errors:
        print("❌ Configuration has errors:")
        for error in errors:
            print(f"   • {error}")
        return 1

    print("✅ Configuration is valid")
    return 0


def create_main_parser() -> argparse.ArgumentParser:
    """Create main CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="airelay",
        description="Multi-provider AI request dispatch",
    )
    parser.add_argument(
        "--config",
        help="Settings file (YAML or JSON); defaults to ./airelay.yaml",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Ask command
    ask_parser = subparsers.add_parser("ask", help="Send a prompt to a provider")
    ask_parser.add_argument("prompt", help="Prompt text")
    ask_parser.add_argument("--provider", "-p", help="Provider (defaults to configured provider)")
    ask_parser.add_argument(
        "--key",
        "-k",
        dest="keys",
        action="append",
        help="API key; repeat to build a key ring tried in order",
    )
    ask_parser.add_argument("--model", "-m", help="Model override")
    ask_parser.add_argument("--temperature", "-t", type=float, help="Sampling temperature (0-2)")
    ask_parser.add_argument("--max-tokens", type=int, help="Completion token budget")
    ask_parser.add_argument("--image", help="Image file to attach (Google only)")
    ask_parser.add_argument("--base-url", help="Endpoint override")
    ask_parser.add_argument("--timeout", type=float, help="Per-call timeout in seconds")
    ask_parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    ask_parser.set_defaults(func=cmd_ask)

    # Providers command
    providers_parser = subparsers.add_parser("providers", help="List supported providers")
    providers_parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format",
    )
    providers_parser.set_defaults(func=cmd_providers)

    # Config commands
    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command")

    show_parser = config_subparsers.add_parser("show", help="Show current configuration")
    show_parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format",
    )
    show_parser.set_defaults(func=cmd_config_show)

    validate_parser = config_subparsers.add_parser("validate", help="Validate configuration")
    validate_parser.set_defaults(func=cmd_config_validate)

    return parser


def main(args: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = create_main_parser()

    if args is None:
        args = sys.argv[1:]

    parsed_args = parser.parse_args(args)

    if not hasattr(parsed_args, "func"):
        parser.print_help()
        return 1

    return parsed_args.func(parsed_args)


if __name__ == "__main__":
    sys.exit(main())
