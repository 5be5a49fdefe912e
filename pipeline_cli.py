#!/usr/bin/env python3
"""
Menu Intelligence Pipeline - CLI for optimizing, suggesting, rewriting and scoring menu items
"""

import json
import logging
import sys
from pathlib import Path
from typing import Dict, Optional

import click
import yaml

from menu_intel.config import load_settings
from menu_intel.errors import MenuIntelError
from menu_intel.models import ItemStatus, MenuItem, RecordKind, Restaurant, ReviewStatus
from menu_intel.core.pipeline_coordinator import PipelineCoordinator
from menu_intel.core.review_workflow import ReviewDecision
from menu_intel.core.taste_enrichment import TasteGraphEnrichment
from menu_intel.content.orchestrator import OptimizationOptions, SuggestionConstraints
from monitor import PipelineMonitor

MODES = ['search', 'optimize', 'suggest', 'enhance', 'review', 'dashboard', 'recompute', 'status']

REVIEW_KINDS = [RecordKind.OPTIMIZATION.value, RecordKind.SUGGESTION.value, RecordKind.DESCRIPTION.value]

logger = logging.getLogger(__name__)


@click.command()
@click.option('--mode', type=click.Choice(MODES), required=True, help='Operation mode')
@click.option('--config', 'config_file', default='config/settings.yaml', help='Settings file')
@click.option('--seed', 'seed_file', type=click.Path(exists=True, dir_okay=False),
              help='YAML/JSON file with restaurants and menu_items to load first')
@click.option('--restaurant-id', help='Restaurant id')
@click.option('--item-ids', help='Comma-separated menu item ids (optimize and enhance modes)')
@click.option('--category', help='Only rewrite items in this category (enhance mode)')
@click.option('--name', help='Restaurant name (search mode)')
@click.option('--city', help='City (search mode)')
@click.option('--state', help='State (search mode)')
@click.option('--style', default='appealing', help='Writing style (optimize and enhance modes)')
@click.option('--target-audience', help='Audience to write for (optimize and enhance modes)')
@click.option('--count', default=None, type=int, help='Number of suggestions (suggest mode)')
@click.option('--decisions-file', type=click.Path(exists=True, dir_okay=False),
              help='JSON list of review decisions (review mode)')
@click.option('--record-id', help='Optimization, suggestion or description id (review mode)')
@click.option('--decision', type=click.Choice(['approved', 'rejected']), help='Review decision')
@click.option('--kind', type=click.Choice(REVIEW_KINDS),
              default=RecordKind.OPTIMIZATION.value, help='Record kind (review mode)')
@click.option('--reviewer', help='Reviewer name (review mode)')
@click.option('--timeframe', default=None, help='7d, 30d, 90d, 1y or all (dashboard mode)')
@click.option('--page', default=1, type=int, help='Dashboard page')
@click.option('--limit', default=10, type=int, help='Dashboard page size')
@click.option('--deadline', default=None, type=float, help='Seconds allowed for a batch')
@click.option('--verbose', is_flag=True, help='Debug logging')
def main(mode, config_file, seed_file, restaurant_id, item_ids, category, name, city, state, style,
         target_audience, count, decisions_file, record_id, decision, kind, reviewer, timeframe, page,
         limit, deadline, verbose):
    """Menu Intelligence Pipeline - AI-assisted menu optimization with human review"""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    settings = load_settings(config_file)
    monitor = PipelineMonitor(settings['run_log'])

    if mode == 'status':
        show_run_status(monitor)
        return

    if mode == 'search':
        if not name or not city:
            click.echo("❌ --name and --city required for search mode")
            sys.exit(1)
        search_restaurant(settings, name, city, state or '')
        return

    if mode in ('optimize', 'suggest', 'enhance', 'dashboard') and not restaurant_id:
        click.echo(f"❌ --restaurant-id required for {mode} mode")
        sys.exit(1)

    if mode == 'review' and not decisions_file and (not record_id or not decision):
        click.echo("❌ --decisions-file, or --record-id with --decision, required for review mode")
        sys.exit(1)

    run_id = monitor.start_run(mode, restaurant_id)
    try:
        coordinator = PipelineCoordinator.from_settings(settings)
        if seed_file:
            seeded = load_seed_file(coordinator, seed_file)
            click.echo(f"✓ Loaded {seeded['restaurants']} restaurants and {seeded['menu_items']} menu items")

        ids = [i.strip() for i in item_ids.split(',') if i.strip()] if item_ids else None
        if mode == 'optimize':
            result = coordinator.optimize_existing_items(
                restaurant_id, ids, OptimizationOptions(style=style, target_audience=target_audience),
                deadline=deadline,
            )
            show_pipeline_result(result, 'optimizations')
            finish_from_outcomes(monitor, run_id, result.outcomes, result.warnings)
        elif mode == 'enhance':
            result = coordinator.enhance_descriptions(
                restaurant_id, ids, category=category, style=style,
                target_audience=target_audience, deadline=deadline,
            )
            show_pipeline_result(result, 'descriptions')
            finish_from_outcomes(monitor, run_id, result.outcomes, result.warnings)
        elif mode == 'suggest':
            constraints = SuggestionConstraints(count=count or settings['pipeline']['suggestion_count'])
            result = coordinator.suggest_new_items(restaurant_id, constraints, deadline=deadline)
            show_pipeline_result(result, 'suggestions')
            finish_from_outcomes(monitor, run_id, result.outcomes, result.warnings)
        elif mode == 'review':
            decisions = load_decisions(decisions_file, record_id, decision, kind, reviewer)
            manifest = coordinator.review_optimizations(decisions)
            for outcome in manifest.outcomes:
                icon = '✅' if outcome.status is ItemStatus.SUCCESS else '❌'
                click.echo(f"{icon} {outcome.item_id} {outcome.reason or ''}".rstrip())
            monitor.finish_run(run_id, succeeded=len(manifest.succeeded), failed=len(manifest.failed))
        elif mode == 'dashboard':
            dashboard = coordinator.get_dashboard_data(restaurant_id, timeframe, page, limit)
            show_dashboard(dashboard)
            monitor.finish_run(run_id, succeeded=len(dashboard.top_performing_items))
        elif mode == 'recompute':
            report = coordinator.recompute_all()
            click.echo(f"\n📊 Rescored {report.items_scored} items across {report.restaurants_processed} restaurants")
            for failure in report.failures:
                click.echo(f"  ❌ {failure['restaurant_id']}: {failure['error']}")
            monitor.finish_run(run_id, succeeded=report.restaurants_processed, failed=len(report.failures))
    except MenuIntelError as e:
        monitor.fail_run(run_id, f"{e.__class__.__name__}: {e}")
        click.echo(f"❌ {mode} failed: {e}")
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Unexpected error in {mode} run {run_id}")
        monitor.fail_run(run_id, f"{e.__class__.__name__}: {e}")
        click.echo(f"❌ {mode} failed unexpectedly: {e}")
        sys.exit(1)


def search_restaurant(settings: Dict, name: str, city: str, state: str):
    """Show taste-graph candidates for a restaurant"""
    enrichment = TasteGraphEnrichment.from_settings(settings)
    try:
        candidates = enrichment.search_entities(name, city, state)
    except MenuIntelError as e:
        click.echo(f"❌ Search failed: {e}")
        sys.exit(1)

    if not candidates:
        click.echo(f"❌ No matches for {name} in {city}")
        return

    click.echo(f"\n🔍 {len(candidates)} candidates for {name}")
    for candidate in candidates:
        click.echo(
            f"  {candidate.entity_id}  {candidate.name} - {candidate.address or 'no address'} "
            f"(relevance {candidate.relevance:.2f}, popularity {candidate.popularity:.2f})"
        )


def load_seed_file(coordinator: PipelineCoordinator, seed_file: str) -> Dict[str, int]:
    """Load restaurants and menu items into storage"""
    with open(seed_file, 'r') as f:
        if Path(seed_file).suffix == '.json':
            data = json.load(f)
        else:
            data = yaml.safe_load(f) or {}

    repository = coordinator.repository
    restaurants = [Restaurant.from_dict(r) for r in data.get('restaurants', [])]
    items = [MenuItem.from_dict(i) for i in data.get('menu_items', [])]
    for restaurant in restaurants:
        repository.save_restaurant(restaurant)
    for item in items:
        repository.save_item(item)

    return {'restaurants': len(restaurants), 'menu_items': len(items)}


def load_decisions(decisions_file: Optional[str], record_id: Optional[str], decision: Optional[str],
                   kind: str, reviewer: Optional[str]):
    if decisions_file:
        with open(decisions_file, 'r') as f:
            return json.load(f)

    return [ReviewDecision(
        record_id=record_id,
        decision=ReviewStatus(decision),
        kind=RecordKind(kind),
        reviewer=reviewer,
    )]


def finish_from_outcomes(monitor: PipelineMonitor, run_id: str, outcomes, warnings):
    monitor.finish_run(
        run_id,
        succeeded=sum(1 for o in outcomes if o.status is ItemStatus.SUCCESS),
        failed=sum(1 for o in outcomes if o.status is ItemStatus.FAILED),
        skipped=sum(1 for o in outcomes if o.status is ItemStatus.SKIPPED),
        warnings=warnings,
    )


def show_pipeline_result(result, label: str):
    """Print a batch result"""
    click.echo(f"\n📋 {len(result.records)} {label} pending review (snapshot {result.snapshot_id})")
    for record in result.records:
        click.echo(f"  ✓ {json.dumps(record.to_dict(), indent=2)}")

    for outcome in result.outcomes:
        if outcome.status is not ItemStatus.SUCCESS:
            click.echo(f"  ⚠️  {outcome.item_id}: {outcome.status.value} - {outcome.reason}")

    for warning in result.warnings:
        click.echo(f"  ⚠️  {warning}")


def show_dashboard(dashboard):
    """Print one dashboard page"""
    click.echo(f"\n📊 DASHBOARD {dashboard.restaurant_id} ({dashboard.timeframe})")
    click.echo("=" * 50)
    click.echo(f"Menu Items: {dashboard.total_menu_items}")
    click.echo(f"Avg Popularity: {dashboard.average_popularity_score:.2f}")
    click.echo(f"Avg Profitability: {dashboard.average_profitability_score:.2f}")
    click.echo(f"Avg Recommendation: {dashboard.average_recommendation_score:.2f}")

    click.echo(f"\n🏆 Top Items (page {dashboard.page}):")
    for item in dashboard.top_performing_items:
        click.echo(f"  {item.name}: {item.recommendation_score:.2f}")

    click.echo("\n📉 Low Items:")
    for item in dashboard.low_performing_items:
        click.echo(f"  {item.name}: {item.recommendation_score:.2f}")

    if dashboard.category_breakdown:
        click.echo("\n📂 By Category:")
        for row in dashboard.category_breakdown:
            click.echo(f"  {row['category']}: {row['item_count']} items, avg {row['average_score']:.2f}")

    click.echo(
        f"\nPage {dashboard.page} | next: {'yes' if dashboard.has_next_page else 'no'} | "
        f"previous: {'yes' if dashboard.has_previous_page else 'no'}"
    )


def show_run_status(monitor: PipelineMonitor):
    """Show run log summary"""
    status = monitor.get_status()

    click.echo("\n📊 PIPELINE STATUS")
    click.echo("=" * 50)
    click.echo(f"Total Runs: {status['total_runs']}")
    click.echo(f"Failed Runs: {status['total_failed']}")
    click.echo(f"In Progress: {status['in_progress_count']}")

    if status['by_mode']:
        click.echo("\n⚙️  By Mode:")
        for mode, stats in status['by_mode'].items():
            click.echo(f"  {mode}: {stats['runs']} runs ({stats['failed']} failed)")

    if status['recent_runs']:
        click.echo("\n🕐 Recent Runs:")
        for run in status['recent_runs'][:5]:
            target = run.get('restaurant_id') or 'all'
            click.echo(f"  {run['mode']}/{target} - {run['status']} - {run['started_at']}")


if __name__ == "__main__":
    main()
