"""
Flask CLI commands for catalog and refund maintenance.

Commands:
- flask import-promotions FILE: Load raw promotion/discount records for a store
- flask sweep-refund-windows: Expire sales whose refund window elapsed
"""

import json
import time

import click
from flask import current_app
from pos_pricing.database import db_session
from pos_pricing.services.promotion_catalog_service import import_records
from pos_pricing.services.refund_service import sweep_expired_sales, window_from_config


def init_cli_commands(app):
    """Register CLI commands with Flask app."""

    @app.cli.command('import-promotions')
    @click.argument('file', type=click.File('r', encoding='utf-8'))
    @click.option('--store-id', type=int, default=None, help='Store the records belong to (default: DEFAULT_STORE_ID)')
    def import_promotions(file, store_id):
        """Import a JSON list of raw promotion and discount records."""
        store_id = store_id or current_app.config.get('DEFAULT_STORE_ID')
        if not store_id:
            click.echo(click.style('No store given: use --store-id or set DEFAULT_STORE_ID', fg='red'))
            raise SystemExit(1)

        try:
            records = json.load(file)
        except json.JSONDecodeError as e:
            click.echo(click.style(f'Invalid JSON: {e}', fg='red'))
            raise SystemExit(1)
        if isinstance(records, dict):
            records = records.get('promotions', []) + records.get('discounts', [])
        if not isinstance(records, list):
            click.echo(click.style('Expected a JSON list of records', fg='red'))
            raise SystemExit(1)

        result = import_records(db_session, int(store_id), records)
        click.echo(click.style(
            f"Imported {result['promotions']} promotions and {result['discounts']} discounts "
            f"for store {store_id}", fg='green'
        ))
        if result['skipped']:
            click.echo(click.style(f"Skipped {result['skipped']} malformed record(s); see log", fg='yellow'))

    @app.cli.command('sweep-refund-windows')
    @click.option('--watch', is_flag=True, help='Keep polling every REFUND_POLL_INTERVAL_SECONDS')
    @click.option('--store-id', type=int, default=None, help='Only sweep one store')
    def sweep_refund_windows(watch, store_id):
        """Move sales whose refund window elapsed to REFUND_EXPIRED."""
        window = window_from_config(current_app.config)
        interval = int(current_app.config.get('REFUND_POLL_INTERVAL_SECONDS', 60))

        while True:
            try:
                expired = sweep_expired_sales(db_session, window=window, store_id=store_id)
                click.echo(f'{expired} sale(s) expired')
            finally:
                db_session.remove()
            if not watch:
                break
            time.sleep(interval)
