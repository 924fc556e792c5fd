#!/usr/bin/env python3
"""
Manual test runner for source rules.

Usage:
    cd backend
    python -m sources.run_source [rule_id]

Examples:
    python -m sources.run_source --list                  # List all rules
    python -m sources.run_source wallhaven -q forest     # Fetch page 1
    python -m sources.run_source civitai --pages 3       # Walk cursor pages
    python -m sources.run_source wallhaven -f categories=100,010
    python -m sources.run_source yandere --rule-file my_rule.json
    python -m sources.run_source pixiv -q landscape --cookie "PHPSESSID=..."
"""

import asyncio
import argparse
import logging
import json
from pathlib import Path

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

from sources.base import Colors
from sources.config import get_rule_summary, parse_rule
from sources.errors import ErrorMapper, SourceError
from sources.manager import SourceManager


def parse_filters(values) -> dict:
    """Parse repeated `key=value` options; commas make a list."""
    filters = {}
    for item in values or []:
        if '=' not in item:
            raise SystemExit(f"Invalid filter '{item}', expected key=value")
        key, value = item.split('=', 1)
        parts = [p for p in value.split(',') if p.strip()]
        filters[key.strip()] = parts if len(parts) > 1 else (parts[0].strip() if parts else '')
    return filters


async def run_fetch(manager: SourceManager, rule_id: str, query: str, filters: dict,
                    pages: int, limit: int, as_json: bool):
    """Fetch one or more pages and print the results."""
    rule = manager.get_rule(rule_id)
    print(f"\n{'='*60}")
    print(f"Fetching: {rule.name} ({rule.id})")
    print(f"URL: {rule.url}")
    print(f"Engine: {rule.engine.value}  Mode: {rule.response_mode.value}  "
          f"Pagination: {rule.pagination.mode.value}")
    print(f"{'='*60}\n")

    for page in range(1, pages + 1):
        images = await manager.fetch(rule, page=page, query=query, filters=filters)
        print(f"--- Page {page}: {len(images)} image(s) ---")

        if as_json:
            print(json.dumps([i.to_dict() for i in images[:limit]], indent=2, ensure_ascii=False))
        else:
            for i, image in enumerate(images[:limit]):
                print(f"{i+1}. {image.id}")
                print(f"   Thumb: {image.thumb_url}")
                print(f"   Full: {image.full_url}")
                print(f"   Size: {image.width}x{image.height}  Grade: "
                      f"{image.grade.value if image.grade else '-'}")
                if image.tags:
                    print(f"   Tags: {', '.join(image.tags[:8])}")
                if image.uploader:
                    print(f"   Uploader: {image.uploader}")
                print()

        if len(images) > limit:
            print(f"... and {len(images) - limit} more images")
        if not images:
            print("No more results")
            break


async def run_login(manager: SourceManager, rule_id: str):
    logged_in = await manager.check_login(rule_id)
    status = Colors.green('logged in') if logged_in else Colors.yellow('not logged in')
    print(f"{rule_id}: {status}")


def list_rules(manager: SourceManager):
    """List all configured rules."""
    print(f"\n{'='*60}")
    print("Available Sources")
    print(f"{'='*60}\n")

    for rule in get_rule_summary(manager.rules):
        print(f"[{rule['engine']:5}] {rule['id']:12} - {rule['name']}")
        print(f"              Type: {rule['response_type']}, pagination: {rule['pagination']}")
        if rule['filters']:
            print(f"              Filters: {', '.join(rule['filters'])}")
        print()


async def main():
    parser = argparse.ArgumentParser(description='Run a source rule')
    parser.add_argument('rule_id', nargs='?', help='Rule id to fetch (e.g., wallhaven)')
    parser.add_argument('--list', action='store_true', help='List all rules')
    parser.add_argument('-q', '--query', type=str, help='Search keyword')
    parser.add_argument('-f', '--filter', action='append', help='Filter as key=value (repeatable)')
    parser.add_argument('--pages', type=int, default=1, help='Number of pages to fetch')
    parser.add_argument('--limit', type=int, default=10, help='Images to print per page')
    parser.add_argument('--rule-file', type=str, help='Load an extra rule from a JSON file')
    parser.add_argument('--cookie', type=str, help='Session cookie for the rule')
    parser.add_argument('--login', action='store_true', help='Only check login status')
    parser.add_argument('--json', action='store_true', help='Print results as JSON')

    args = parser.parse_args()

    manager = SourceManager()
    try:
        if args.rule_file:
            rule = manager.register_rule(parse_rule(Path(args.rule_file).read_text(encoding='utf-8')))
            print(f"Loaded rule '{rule.id}' from {args.rule_file}")

        if args.list:
            list_rules(manager)
            return

        if not args.rule_id:
            parser.print_help()
            print("\nExample: python -m sources.run_source wallhaven -q forest")
            return

        rule_id = args.rule_id.lower()
        if manager.get_rule(rule_id) is None:
            print(f"Unknown rule '{rule_id}'. Use --list to see available rules.")
            return

        if args.cookie:
            manager.set_cookie(rule_id, args.cookie)

        try:
            if args.login:
                await run_login(manager, rule_id)
            else:
                await run_fetch(manager, rule_id, args.query, parse_filters(args.filter),
                                args.pages, args.limit, args.json)
        except SourceError as e:
            mapped = ErrorMapper().map(e)
            print(f"\n{Colors.red('ERROR')}: {mapped.user_message}")
            print(f"  {mapped.debug_message}")
    finally:
        await manager.close()


if __name__ == '__main__':
    asyncio.run(main())
