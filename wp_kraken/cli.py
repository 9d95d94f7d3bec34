#!/usr/bin/env python3
"""
wp-kraken command line.

Usage Examples:
    wp-kraken --setup                 # Interactive setup
    wp-kraken --api-test              # Validate API credentials
    wp-kraken --dry-run --limit 10    # Show what would be kraked
    wp-kraken 1337 --lossy            # Krake one attachment, lossy
    wp-kraken 1337 --reset            # Forget that 1337 was kraked
"""

import argparse
import sys

from mysql.connector import Error as MySQLError

from wp_kraken import __version__
from wp_kraken.api import KrakenClient
from wp_kraken.batch import BatchRunner
from wp_kraken.config import (DEFAULT_CONFIG_FILE, ConfigError, interactive_setup,
                              load_config, uploads_path, validate_config)
from wp_kraken.events import MediaEvents
from wp_kraken.library import WordPressDatabase
from wp_kraken.log import setup_logging
from wp_kraken.optimization import KrakenOptimization


def show_banner():
    print("═" * 60)
    print(f"🐙 wp-kraken v{__version__} - Kraken.io image optimization for WordPress")
    print("═" * 60)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='wp-kraken',
        description='Optimize/compress WordPress image attachments using the Kraken Image Optimizer API.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                            Krake all images that have not been kraked
  %(prog)s 1337                       Krake all image sizes of attachment 1337
  %(prog)s --limit 42                 Krake a maximum of 42 images
  %(prog)s --dry-run                  Show report without executing API calls
  %(prog)s --api-test                 Validate credentials and show account summary
        """
    )

    parser.add_argument('ids', nargs='*', type=int, metavar='attachment-id',
                        help='One or more IDs of the attachments to krake')

    parser.add_argument('--lossy', action='store_true', default=None,
                        help='Use lossy image compression')
    parser.add_argument('--limit', default=None,
                        help='Maximum number of images to krake. Default: -1')
    parser.add_argument('--types', default=None,
                        help="Image format(s) to krake. Default: 'gif,jpeg,png,svg'")
    parser.add_argument('--compare', default=None,
                        help='Image metadata comparison method. Values: none, md4, timestamp. Default: md4')
    parser.add_argument('--all', action='store_true',
                        help='Bypass metadata comparison')
    parser.add_argument('--dry-run', action='store_true',
                        help='Do a dry run and show report without executing API calls')
    parser.add_argument('--api-key', help='Kraken API key to use')
    parser.add_argument('--api-secret', help='Kraken API secret to use')
    parser.add_argument('--api-test', action='store_true',
                        help='Validate Kraken API credentials and show account summary')

    parser.add_argument('--config', default=DEFAULT_CONFIG_FILE,
                        help='Configuration file path')
    parser.add_argument('--log-level', default=None,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level (overrides the configuration file)')
    parser.add_argument('--setup', action='store_true',
                        help='Interactive configuration setup')
    parser.add_argument('--validate-config', action='store_true',
                        help='Validate configuration file')
    parser.add_argument('--version', action='store_true',
                        help='Show version information')

    parser.add_argument('--reset', action='store_true',
                        help='Delete Kraken optimization data of the given attachments')
    parser.add_argument('--reset-all', action='store_true',
                        help='Delete Kraken optimization data of all attachments')
    parser.add_argument('--list-unoptimized', nargs='?', const=1, type=int, metavar='PAGE',
                        help='List attachments that have not been kraked (30 per page)')
    parser.add_argument('--on-upload', action='store_true',
                        help='Run the upload handlers for the given attachments')
    return parser


def open_library(config):
    """Connected WordPressDatabase for the configured site."""
    return WordPressDatabase(config['database'], uploads_path(config)).connect()


def build_client(config, args) -> KrakenClient:
    kraken = config['kraken']
    return KrakenClient(
        api_key=args.api_key or kraken.get('api_key') or '',
        api_secret=args.api_secret or kraken.get('api_secret') or '',
        timeout=kraken.get('timeout', 300)
    )


def batch_options(config, args):
    options = dict(config.get('cli', {}))
    if args.lossy:
        options['lossy'] = True
    if args.limit is not None:
        options['limit'] = args.limit
    if args.types is not None:
        options['types'] = args.types
    if args.compare is not None:
        options['compare'] = args.compare
    options['all'] = args.all
    options['dry_run'] = args.dry_run
    options['api_test'] = args.api_test
    return options


def reset_images(optimizer, ids) -> int:
    if not ids:
        print("❌ --reset needs at least one attachment ID")
        return 1

    failures = 0
    for attachment_id in ids:
        if optimizer.reset_image(attachment_id):
            print(f"✅ Reset attachment {attachment_id}")
        else:
            print(f"⚠️  Attachment {attachment_id} had no complete optimization data")
            failures += 1
    return 1 if failures else 0


def list_unoptimized(optimizer, page) -> int:
    result = optimizer.get_unoptimized_images(page)
    print(f"📸 {result['total']} unoptimized attachments, page {page} of {result['pages']}")
    for attachment_id in result['ids']:
        print(f"   {attachment_id}: {optimizer.library.get_title(attachment_id)}")
    return 0


def dispatch_uploads(events, library, optimizer, ids) -> int:
    if not ids:
        print("❌ --on-upload needs at least one attachment ID")
        return 1
    if not optimizer.options.get('auto_optimize'):
        print("⚠️  auto_optimize is disabled in the configuration, nothing to do")
        return 0

    for attachment_id in ids:
        events.attachment_created(attachment_id)
        events.thumbnails_generated(library.get_attachment_metadata(attachment_id), attachment_id)
        state = "optimized" if optimizer.is_optimized(attachment_id) else "not optimized"
        print(f"   {attachment_id}: {state}")
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    if args.version:
        print(f"wp-kraken {__version__}")
        print(f"Python: {sys.version.split()[0]}")
        return 0

    show_banner()

    if args.setup:
        return 0 if interactive_setup(args.config) else 1

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"❌ {e}")
        print("💡 Tip: Run --setup to create a configuration file.")
        return 1

    logger = setup_logging(args.log_level or config['logging']['level'],
                           config['logging']['directory'])

    if args.validate_config:
        issues = validate_config(config)
        if issues:
            print("❌ Configuration validation failed:")
            for issue in issues:
                print(f"   • {issue}")
            return 1
        print("✅ Configuration validation passed!")
        return 0

    if args.dry_run:
        mutating = [flag for flag, enabled in (('--reset', args.reset),
                                               ('--reset-all', args.reset_all),
                                               ('--on-upload', args.on_upload)) if enabled]
        if mutating:
            print(f"❌ --dry-run cannot be combined with {', '.join(mutating)}")
            return 1

    client = build_client(config, args)

    try:
        library = open_library(config)
    except MySQLError as e:
        logger.error(f"Database connection failed: {e}")
        print(f"❌ Database connection failed: {e}")
        return 1

    try:
        events = MediaEvents()
        optimizer = KrakenOptimization(library, client, config['optimization'], events=events)

        if args.reset_all:
            ok = optimizer.reset_all_images()
            print("✅ All optimization data deleted" if ok else "⚠️  Nothing (or not everything) to delete")
            return 0 if ok else 1
        if args.reset:
            return reset_images(optimizer, args.ids)
        if args.list_unoptimized is not None:
            return list_unoptimized(optimizer, args.list_unoptimized)
        if args.on_upload:
            return dispatch_uploads(events, library, optimizer, args.ids)

        return BatchRunner(optimizer, batch_options(config, args), ids=args.ids).run()

    except KeyboardInterrupt:
        print("\n⚠️  Operation cancelled by user.")
        return 130
    finally:
        library.close()


if __name__ == "__main__":
    sys.exit(main())
