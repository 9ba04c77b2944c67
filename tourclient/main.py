"""
Command-line entry point for the TensorTours client core.

Provides sign-in/out, session inspection and the backend operations for
manual use and smoke testing.
"""

import argparse
import asyncio
import getpass
import json
import logging
import sys
from typing import Any, Dict

from tourclient.config import ClientConfiguration
from tourclient.context import ClientContext
from tourshared.exceptions import TourClientError, UnverifiedAccountError
from tourshared.logging_config import setup_logging, LogLevel, LogFormat, log_structured_error
from tourshared.models import TourType

logger = logging.getLogger(__name__)

TOUR_TYPES = [tour_type.value for tour_type in TourType]


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="tensortours-client",
        description="TensorTours client core",
        epilog="""
Examples:
  %(prog)s --status                         # Show authentication status
  %(prog)s --sign-in alice                  # Sign in (prompts for password)
  %(prog)s --places 47.6062 -122.3321       # Places near a location
  %(prog)s --tour ChIJ... --tour-type art   # Fetch a tour
  %(prog)s --preview seattle --json         # Guest city preview as JSON
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    operation_group = parser.add_mutually_exclusive_group()
    operation_group.add_argument("--status", action="store_true",
                                 help="Show authentication status and exit")
    operation_group.add_argument("--sign-in", type=str, metavar="USER",
                                 help="Sign in as USER (password is prompted)")
    operation_group.add_argument("--sign-out", action="store_true",
                                 help="Sign out and clear stored credentials")
    operation_group.add_argument("--refresh", action="store_true",
                                 help="Force a token refresh")
    operation_group.add_argument("--places", type=float, nargs=2, metavar=("LAT", "LNG"),
                                 help="List places near a location")
    operation_group.add_argument("--tour", type=str, metavar="PLACE_ID",
                                 help="Fetch the tour for a place")
    operation_group.add_argument("--preview", type=str, metavar="CITY",
                                 help="Fetch the guest preview of a city")

    query_group = parser.add_argument_group('Query options')
    query_group.add_argument("--radius", type=int, default=500,
                             help="Search radius in meters (default: 500)")
    query_group.add_argument("--tour-type", type=str, choices=TOUR_TYPES, default=TourType.HISTORY.value,
                             help="Tour type (default: history)")
    query_group.add_argument("--max-results", type=int, default=5,
                             help="Maximum places to return (default: 5)")
    query_group.add_argument("--category", type=str,
                             help="Read the pre-built preview content for this category")

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE",
                              help="Path to configuration file")
    config_group.add_argument("--api-url", type=str, metavar="URL",
                              help="Override backend API URL")

    output_group = parser.add_argument_group('Output')
    output_group.add_argument("--json", action="store_true",
                              help="Output results as JSON")

    debug_group = parser.add_argument_group('Debug')
    debug_group.add_argument("--debug", action="store_true",
                             help="Enable debug logging")
    debug_group.add_argument("--log-file", type=str, metavar="FILE",
                             help="Write logs to file")

    return parser, parser.parse_args(argv)


def configure_logging(args, config: ClientConfiguration) -> None:
    """Configure logging from configuration and command line arguments."""
    if args.debug:
        log_level = LogLevel.DEBUG
    elif args.json:
        # Keep stdout clean for JSON consumers
        log_level = LogLevel.ERROR
    else:
        try:
            log_level = LogLevel(config.get_log_level())
        except ValueError:
            log_level = LogLevel.WARNING

    try:
        log_format = LogFormat(config.get_log_format())
    except ValueError:
        log_format = LogFormat.STANDARD

    setup_logging(
        log_level=log_level,
        log_format=log_format,
        log_file=args.log_file or config.get_log_file(),
        audit_file=config.get_audit_file()
    )


def emit(args, data: Dict[str, Any], text: str) -> None:
    if args.json:
        print(json.dumps(data, indent=2, default=str))
    else:
        print(text)


async def handle_status(args, context: ClientContext) -> int:
    status = await context.session_manager.is_authenticated()
    user = await context.session_manager.get_current_user_data() if status.is_authenticated else None

    data = {
        'authenticated': status.is_authenticated,
        'state': context.session_manager.state.value,
        'user': user.to_dict() if user else None,
        'error': status.error.to_dict()['error'] if isinstance(status.error, TourClientError) else None,
    }
    lines = [f"Authenticated: {'Yes' if status.is_authenticated else 'No'}",
             f"Session state: {data['state']}"]
    if user:
        lines.append(f"User: {user.username} ({user.email or 'no email'})")
    if status.error:
        lines.append(f"Error: {status.error}")
    emit(args, data, "\n".join(lines))
    return 0 if status.error is None else 1


async def handle_sign_in(args, context: ClientContext) -> int:
    password = getpass.getpass(f"Password for {args.sign_in}: ")
    try:
        session = await context.session_manager.sign_in(args.sign_in, password)
    except UnverifiedAccountError as e:
        print(f"Account {e.username} is not verified yet. Check your email for the code.", file=sys.stderr)
        return 1

    emit(args, {'signed_in': True, 'username': session.username},
         f"Signed in as {session.username}")
    return 0


async def handle_sign_out(args, context: ClientContext) -> int:
    await context.session_manager.sign_out()
    emit(args, {'signed_out': True}, "Signed out")
    return 0


async def handle_refresh(args, context: ClientContext) -> int:
    result = await context.session_manager.refresh(force=True)
    if not result.ok:
        raise result.error
    emit(args, {'refreshed': True}, "Token refreshed")
    return 0


async def handle_places(args, context: ClientContext) -> int:
    latitude, longitude = args.places
    response = await context.api.get_places(
        latitude, longitude, radius=args.radius,
        tour_type=TourType(args.tour_type), max_results=args.max_results
    )
    lines = [f"{len(response.places)} places near ({latitude}, {longitude}):"]
    lines += [f"  {place.place_id}  {place.name or ''}" for place in response.places]
    emit(args, response.raw, "\n".join(lines))
    return 0


async def handle_tour(args, context: ClientContext) -> int:
    response = await context.api.get_tour(args.tour, TourType(args.tour_type))
    tour = response.tour
    text = f"Tour: {tour.place_name or tour.place_id} [{tour.tour_type.value}]"
    if tour.audio_url:
        text += f"\nAudio: {tour.audio_url}"
    emit(args, response.raw, text)
    return 0


async def handle_preview(args, context: ClientContext) -> int:
    if args.category:
        preview = await context.preview_content.fetch(args.preview, args.category)
    else:
        preview = await context.api.fetch_city_preview(args.preview, TourType(args.tour_type))

    data = {'city': preview.city, 'places': preview.places, 'error': preview.error}
    text = f"{preview.city}: {len(preview.places)} preview places"
    if preview.error:
        text += f" (unavailable: {preview.error})"
    emit(args, data, text)
    return 0 if preview.error is None else 1


async def run_command(args, config: ClientConfiguration) -> int:
    """Build the client core and run the selected command."""
    handlers = [
        (args.status, handle_status),
        (args.sign_in, handle_sign_in),
        (args.sign_out, handle_sign_out),
        (args.refresh, handle_refresh),
        (args.places, handle_places),
        (args.tour, handle_tour),
        (args.preview, handle_preview),
    ]
    handler = next(h for selected, h in handlers if selected)

    async with ClientContext.from_config(config) as context:
        try:
            return await handler(args, context)
        except TourClientError as e:
            log_structured_error(logger, e, level=logging.DEBUG)
            if args.json:
                print(json.dumps(e.to_dict(), indent=2, default=str))
            else:
                print(f"Error: {e.user_message}", file=sys.stderr)
            return 1


def main(argv=None) -> int:
    """Main entry point for the client."""
    parser, args = parse_arguments(argv)

    if not any([args.status, args.sign_in, args.sign_out, args.refresh,
                args.places, args.tour, args.preview]):
        parser.print_help()
        return 0

    try:
        config = ClientConfiguration(args.config)
        if args.api_url:
            config.set_override('api.base_url', args.api_url)

        configure_logging(args, config)
        return asyncio.run(run_command(args, config))

    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return 130
    except TourClientError as e:
        print(f"Error: {e.user_message}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Fatal error: {str(e)}", file=sys.stderr)
        logger.exception("Fatal error in main")
        return 1


if __name__ == "__main__":
    sys.exit(main())
