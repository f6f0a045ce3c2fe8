"""CardDAV sync command-line tool."""

import argparse
import asyncio
import getpass
import json
import os
import sys
from pathlib import Path


def _credentials(args: argparse.Namespace) -> tuple[str, str]:
    username = args.username or os.getenv("CARDSYNC_USERNAME") or input("Username: ")
    password = args.password or os.getenv("CARDSYNC_PASSWORD") or getpass.getpass("Password: ")
    return username, password


async def _open_client(args: argparse.Namespace):
    from py_cardsync.carddav import CardDAVClient, build_http_client
    from py_cardsync.config import Settings
    from py_cardsync.url_validation import validate_server_url

    settings = Settings(debug=args.debug)
    await validate_server_url(args.url, allow_private=args.allow_private or settings.allow_private_hosts)
    username, password = _credentials(args)
    http_client = build_http_client(username, password, settings)
    return CardDAVClient(http_client, args.url, debug_logging=settings.debug)


async def list_address_books(args: argparse.Namespace) -> int:
    async with await _open_client(args) as client:
        books = await client.discover_address_books()

    if not books:
        print("No address books found", file=sys.stderr)
        return 1
    for index, book in enumerate(books):
        print(f"[{index}] {book.display_name or '(unnamed)'}")
        print(f"    {book.url}")
        if book.description:
            print(f"    {book.description}")
    return 0


async def fetch_vcards(args: argparse.Namespace) -> int:
    from py_cardsync.vcard import parse_vcard

    async with await _open_client(args) as client:
        books = await client.discover_address_books()
        if args.book >= len(books):
            print(f"Error: address book {args.book} not found ({len(books)} available)", file=sys.stderr)
            return 1
        cards = await client.list_vcards(books[args.book])

    dump_dir = Path(args.dump).resolve() if args.dump else None
    if dump_dir:
        dump_dir.mkdir(parents=True, exist_ok=True)

    for card in cards:
        parsed = parse_vcard(card.data)
        print(f"{parsed.uid or '-'}\t{parsed.display_name()}\t{card.etag}")
        if dump_dir:
            name = (parsed.uid or Path(card.url).stem).replace("/", "_")
            (dump_dir / f"{name}.vcf").write_text(card.data, encoding="utf-8")

    print(f"{len(cards)} vCard(s)", file=sys.stderr)
    return 0


def parse_file(args: argparse.Namespace) -> int:
    from py_cardsync.vcard import parse_vcard, split_vcards

    path = Path(args.file)
    if not path.is_file():
        print(f"Error: file does not exist: {path}", file=sys.stderr)
        return 1

    contacts = [json.loads(parse_vcard(text).to_json()) for text in split_vcards(path.read_text(encoding="utf-8"))]
    json.dump(contacts, sys.stdout, indent=2, ensure_ascii=False)
    print()
    return 0


def main() -> None:
    """Main entry point for the CardDAV sync tool."""
    parser = argparse.ArgumentParser(
        description="CardDAV address book client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List address books
  py-cardsync addressbooks https://carddav.example.com/ -u alice

  # Fetch every vCard of the first address book into a directory
  py-cardsync fetch https://carddav.example.com/ -u alice --dump ./contacts

  # Decode a .vcf file to JSON
  py-cardsync parse contacts.vcf

Credentials can also be given with CARDSYNC_USERNAME and CARDSYNC_PASSWORD.
        """,
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="enable debug logging (logs request/response bodies with formatted XML)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_server_args(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("url", help="CardDAV server URL")
        sub.add_argument("-u", "--username", help="account name")
        sub.add_argument("-p", "--password", help="password (prompted if omitted)")
        sub.add_argument(
            "--allow-private",
            action="store_true",
            help="allow servers on private or loopback addresses",
        )

    addressbooks = subparsers.add_parser("addressbooks", help="discover address books")
    add_server_args(addressbooks)

    fetch = subparsers.add_parser("fetch", help="list the vCards of an address book")
    add_server_args(fetch)
    fetch.add_argument("--book", type=int, default=0, help="address book index (default: 0)")
    fetch.add_argument("--dump", help="write each vCard to this directory")

    parse = subparsers.add_parser("parse", help="decode a .vcf file to JSON")
    parse.add_argument("file", help="vCard file, may hold several cards")

    args = parser.parse_args()

    if args.debug:
        from py_cardsync.debug import setup_debug_logging
        setup_debug_logging()

    from py_cardsync.internal import HTTPError
    from py_cardsync.url_validation import InvalidServerURL

    try:
        if args.command == "addressbooks":
            code = asyncio.run(list_address_books(args))
        elif args.command == "fetch":
            code = asyncio.run(fetch_vcards(args))
        else:
            code = parse_file(args)
    except InvalidServerURL as e:
        print(f"Error: {e}", file=sys.stderr)
        code = 2
    except HTTPError as e:
        print(f"Error: server returned HTTP {e.code}: {e}", file=sys.stderr)
        code = 1

    sys.exit(code)


if __name__ == "__main__":
    main()
