from bluesky_poster import BlueskyPoster
from bluesky_timeline import fetch_timeline_markdown, timeline_filename, validate_timeline_limit
import asyncio
import sys
from datetime import datetime
from pathlib import Path
import os
from dotenv import load_dotenv
import argparse
from atproto import AsyncClient


def load_config(env_path=None):
    """
    Loads Bluesky settings from a .env.local file (next to this script by default) and the environment.
    """
    if env_path is None:
        env_path = Path(__file__).parent / '.env.local'
    load_dotenv(dotenv_path=env_path)

    return {
        'handle': os.getenv("BLUESKY_HANDLE"),
        'password': os.getenv("BLUESKY_PASSWORD"),
        'pds_url': os.getenv("BLUESKY_PDS_URL", "https://bsky.social"),
        'timeline_limit': int(os.getenv("BLUESKY_TIMELINE_LIMIT", 10)),
        'resolve_timeout_seconds': float(os.getenv("HANDLE_RESOLUTION_TIMEOUT_SECONDS", 10.0)),
    }


def build_parser():
    parser = argparse.ArgumentParser(
        description="Post markdown-like text to Bluesky with links and mentions as rich text facets.",
        formatter_class=argparse.RawTextHelpFormatter
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('login', help='Check that the configured credentials can log in.')

    post_parser = subparsers.add_parser('post', help='Post text read from a file or stdin.')
    post_parser.add_argument('--file', type=Path,
                             help='Read the text to post from this file instead of stdin.')
    post_parser.add_argument('--annotate', action='store_true',
                             help='On success, prepend a "posted at" marker to --file.')

    timeline_parser = subparsers.add_parser('timeline', help='Save a page of the home timeline as markdown.')
    timeline_parser.add_argument('--limit', type=int,
                                 help='Number of posts to fetch (1-50). Defaults to BLUESKY_TIMELINE_LIMIT.')
    timeline_parser.add_argument('--output-dir', type=Path, default=Path('.'),
                                 help='Directory to write timeline_<timestamp>.md into.')
    return parser


async def run_post(config, args, poster=None):
    if args.annotate and not args.file:
        print("Error: --annotate requires --file.", file=sys.stderr)
        return 2

    text = args.file.read_text(encoding='utf-8') if args.file else sys.stdin.read()

    if poster is None:
        poster = BlueskyPoster(config['pds_url'], config['handle'], config['password'],
                               resolve_timeout=config['resolve_timeout_seconds'])
    await poster.login()

    annotated = await poster.post_selection(text)
    if annotated is None:
        return 1

    if args.annotate:
        args.file.write_text(annotated, encoding='utf-8')
    return 0


async def run_login(config, poster=None):
    if poster is None:
        poster = BlueskyPoster(config['pds_url'], config['handle'], config['password'])
    return 0 if await poster.login() else 1


async def run_timeline(config, args, client=None):
    limit = args.limit if args.limit is not None else config['timeline_limit']
    try:
        validate_timeline_limit(limit)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    if client is None:
        client = AsyncClient(base_url=config['pds_url'])
        try:
            profile = await client.login(config['handle'], config['password'])
            print(f"Logged in as {profile.handle} ({profile.did})")
        except Exception as e:
            print(f"Error: Login failed. {e}", file=sys.stderr)
            return 1

    try:
        markdown = await fetch_timeline_markdown(client, limit)
    except Exception as e:
        print(f"Failed to get Timeline: {e}", file=sys.stderr)
        return 1

    output_path = args.output_dir / timeline_filename(datetime.now())
    output_path.write_text(markdown, encoding='utf-8')
    print(f"Timeline written to {output_path}")
    return 0


async def main(argv=None):
    """
    Loads configuration and dispatches the requested command.
    """
    args = build_parser().parse_args(argv)
    try:
        config = load_config()
    except ValueError as e:
        print(f"Error: invalid configuration value. {e}", file=sys.stderr)
        return 2

    if not (config['handle'] and config['password']):
        print("Error: BLUESKY_HANDLE and BLUESKY_PASSWORD must be set in your .env.local file.", file=sys.stderr)
        return 2

    if args.command == 'login':
        return await run_login(config)
    if args.command == 'post':
        return await run_post(config, args)
    return await run_timeline(config, args)


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
