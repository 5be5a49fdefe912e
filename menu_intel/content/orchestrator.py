"""
Content Orchestrator

Capability operations (optimize, describe, suggest, recommend) over an
ordered list of providers. A provider that fails or returns malformed output
is recorded in the audit trail and the next one is tried.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from menu_intel.errors import ApiError, GenerationFailed, InvalidRequest, MalformedOutput
from menu_intel.models import (
    DemographicsSnapshot, GenerationAudit, MenuItem, MenuItemSuggestion, Recommendation,
    Restaurant, SpecialtyDish, TasteProfile, new_id
)
from utils.unicode_handler import normalize_name
from menu_intel.content.prompt_engine import PromptEngine
from menu_intel.content.providers import ContentProvider
from menu_intel.content.response_validator import ResponseValidator

logger = logging.getLogger(__name__)

MAX_EXISTING_ITEMS_IN_PROMPT = 20


@dataclass
class GenerationResult:
    """Validated output of one capability call and where it came from"""
    value: Any
    audit: GenerationAudit
    warnings: List[str] = field(default_factory=list)


@dataclass
class OptimizationProposal:
    optimized_name: str
    optimized_description: str
    reason: str
    demographic_insights: List[str] = field(default_factory=list)


@dataclass
class OptimizationOptions:
    """Caller choices for optimize_existing_items"""
    style: str = 'appealing'
    target_audience: Optional[str] = None
    selected_age_groups: List[str] = field(default_factory=list)
    selected_interests: List[str] = field(default_factory=list)
    specialty_dish_limit: int = 5


@dataclass
class SuggestionConstraints:
    """Caller choices for suggest_new_items"""
    count: int = 5
    cuisine_style: Optional[str] = None
    price_range: Optional[str] = None  # budget, moderate, upscale, luxury
    exclude_categories: List[str] = field(default_factory=list)


def build_demographic_insights(demographics: Optional[DemographicsSnapshot],
                               selected_age_groups: Optional[List[str]] = None,
                               selected_interests: Optional[List[str]] = None) -> List[str]:
    """
    Human-readable audience facts for prompts and review screens.

    Without an explicit selection the two largest age groups are used.
    """
    insights: List[str] = []
    if demographics is None or demographics.is_empty:
        return insights

    if selected_age_groups:
        groups = [g for g in demographics.age_groups if g.age_range in selected_age_groups]
    else:
        groups = demographics.dominant_segments()

    if groups:
        names = ', '.join(f"{g.age_range} ({g.percentage:g}%)" for g in groups)
        insights.append(f"Target age groups: {names}")
        preferences = []
        for group in groups:
            for preference in group.preferences:
                if preference not in preferences:
                    preferences.append(preference)
        if preferences:
            insights.append(f"Age group preferences: {', '.join(preferences)}")

    interests = [i for i in demographics.interests if not selected_interests or i in selected_interests]
    if interests:
        insights.append(f"Target interests: {', '.join(interests)}")

    if demographics.dining_patterns:
        top_pattern = max(demographics.dining_patterns, key=lambda p: p.frequency)
        insights.append(f"Primary dining pattern: {top_pattern.pattern} ({top_pattern.frequency:g}% frequency)")
        if top_pattern.time_of_day:
            insights.append(f"Popular dining times: {', '.join(top_pattern.time_of_day)}")

    return insights


def _format_item_details(item: MenuItem) -> str:
    lines = [f"Category: {item.category or 'uncategorized'}", f"Price: {item.price:.2f}"]
    if item.ingredients:
        lines.append(f"Ingredients: {', '.join(item.ingredients)}")
    if item.dietary_tags:
        lines.append(f"Dietary Tags: {', '.join(item.dietary_tags)}")
    return '\n'.join(lines)


def _format_dishes(dishes: List[SpecialtyDish]) -> str:
    if not dishes:
        return "None available"
    return '\n'.join(
        f"{i}. {dish.display_name} (popular at {dish.restaurant_count} restaurants, "
        f"popularity score: {dish.popularity:.2f})"
        for i, dish in enumerate(dishes, 1)
    )


class ContentOrchestrator:
    """Runs content capabilities against providers in order, with fallback"""

    def __init__(self, providers: List[ContentProvider], prompt_engine: Optional[PromptEngine] = None,
                 validator: Optional[ResponseValidator] = None):
        self.providers = list(providers)
        self.prompt_engine = prompt_engine or PromptEngine()
        self.validator = validator or ResponseValidator()

    def _generate(self, capability: str, prompt_values: Dict,
                  validate: Callable[[str], Dict]) -> Tuple[Dict, GenerationAudit, List[str]]:
        """Try each provider until one returns valid output"""
        prompt_data = self.prompt_engine.create_prompt(capability, **prompt_values)
        attempts: List[Tuple[str, str]] = []

        for provider in self.providers:
            provider_name = provider.name.value
            try:
                response = provider.generate(prompt_data, capability)
                result = validate(response.text)
                if not result['valid']:
                    raise MalformedOutput(
                        f"{provider_name} returned malformed {capability} output: {'; '.join(result['errors'])}",
                        result['errors']
                    )
            except (ApiError, MalformedOutput) as e:
                reason = f"{e.__class__.__name__}: {e}"
                logger.warning(f"Provider {provider_name} failed {capability}: {reason}")
                attempts.append((provider_name, reason))
                continue

            audit = GenerationAudit(
                provider=response.provider,
                model=response.model,
                capability=capability,
                prompt_version=prompt_data['version'],
                prompt_template=prompt_data['template_name'],
                attempts=tuple(attempts),
            )
            if attempts:
                logger.info(f"{capability} served by {provider_name} after {len(attempts)} failed provider(s)")
            return result['parsed_data'], audit, result['warnings']

        raise GenerationFailed(capability, attempts)

    def optimize_item(self, item: MenuItem, taste_profile: TasteProfile,
                      restaurant: Optional[Restaurant] = None,
                      options: Optional[OptimizationOptions] = None) -> GenerationResult:
        """Propose a better name and description for an existing item"""
        options = options or OptimizationOptions()
        insights = build_demographic_insights(
            taste_profile.demographics, options.selected_age_groups, options.selected_interests
        )
        dishes = list(taste_profile.specialty_dishes[:options.specialty_dish_limit])
        cuisine = (restaurant.cuisine if restaurant and restaurant.cuisine else "the restaurant's cuisine style")

        parsed, audit, warnings = self._generate(
            'optimize_item',
            {
                'item_name': item.name,
                'item_description': item.description,
                'item_details': _format_item_details(item),
                'cuisine': cuisine,
                'demographic_insights': '\n'.join(insights) or 'No demographic data available',
                'specialty_dishes': _format_dishes(dishes),
                'style': options.style,
                'target_audience': options.target_audience or "the restaurant's primary customer demographic",
            },
            self.validator.validate_optimization,
        )

        proposal = OptimizationProposal(
            optimized_name=parsed['optimized_name'],
            optimized_description=parsed['optimized_description'],
            reason=parsed['reason'],
            demographic_insights=insights,
        )
        return GenerationResult(value=proposal, audit=audit, warnings=warnings)

    def enhance_description(self, item: MenuItem, taste_profile: TasteProfile,
                            target_audience: Optional[str] = None,
                            style: Optional[str] = None) -> GenerationResult:
        """Rewrite an item's description; the result value is plain text"""
        insights = build_demographic_insights(taste_profile.demographics)

        parsed, audit, warnings = self._generate(
            'enhance_description',
            {
                'item_name': item.name,
                'item_description': item.description,
                'item_details': _format_item_details(item),
                'demographic_insights': '\n'.join(insights) or 'No demographic data available',
                'style': style or 'appealing',
                'target_audience': target_audience or "the restaurant's primary customer demographic",
            },
            self.validator.validate_description,
        )
        return GenerationResult(value=parsed['description'], audit=audit, warnings=warnings)

    def explain_recommendation(self, customer_profile: Dict, items: List[MenuItem],
                               taste_profiles: List[TasteProfile]) -> Recommendation:
        """Recommend items from the given list to a customer, with reasons"""
        if not items:
            raise InvalidRequest("No candidate items to recommend from")

        items_text = '\n'.join(f"{item.item_id}: {item.name} - {item.description}" for item in items)
        profile_text = '\n'.join(f"{key}: {value}" for key, value in customer_profile.items()) or 'Unknown guest'

        context_lines = []
        for profile in taste_profiles:
            context_lines.extend(build_demographic_insights(profile.demographics))
            if profile.specialty_dishes:
                names = ', '.join(d.display_name for d in profile.specialty_dishes[:5])
                context_lines.append(f"Popular nearby dishes: {names}")

        item_ids = [item.item_id for item in items]
        parsed, audit, _ = self._generate(
            'explain_recommendation',
            {
                'customer_profile': profile_text,
                'items': items_text,
                'taste_context': '\n'.join(context_lines) or 'No local taste data available',
            },
            lambda text: self.validator.validate_recommendation(text, item_ids),
        )

        recommendations = parsed['recommendations']
        return Recommendation(
            restaurant_id=items[0].restaurant_id,
            target_segment=parsed['target_segment'],
            recommended_item_ids=[r['item_id'] for r in recommendations],
            explanations={r['item_id']: r['explanation'] for r in recommendations},
            audit=audit,
        )

    def generate_item_suggestions(self, restaurant: Restaurant, trending_dishes: List[SpecialtyDish],
                                  existing_items: List[MenuItem],
                                  constraints: Optional[SuggestionConstraints] = None) -> List[MenuItemSuggestion]:
        """
        Generate new item ideas seeded by trending specialty dishes.

        Returns:
            Pending MenuItemSuggestion records, at most constraints.count
        """
        constraints = constraints or SuggestionConstraints()
        dishes = list(trending_dishes[:constraints.count * 2])

        existing_names = [item.name for item in existing_items]
        existing_text = ', '.join(existing_names[:MAX_EXISTING_ITEMS_IN_PROMPT]) or 'None'
        if len(existing_names) > MAX_EXISTING_ITEMS_IN_PROMPT:
            existing_text += '...'

        constraint_lines = []
        if constraints.cuisine_style:
            constraint_lines.append(f"Preferred Style: {constraints.cuisine_style}")
        if constraints.price_range:
            constraint_lines.append(f"Target Price Range: {constraints.price_range}")
        if constraints.exclude_categories:
            constraint_lines.append(f"CATEGORIES TO EXCLUDE: {', '.join(constraints.exclude_categories)}")

        parsed, audit, warnings = self._generate(
            'generate_item_suggestions',
            {
                'restaurant_name': restaurant.name,
                'location': restaurant.location or 'Unknown',
                'cuisine': restaurant.cuisine or ', '.join(restaurant.genre_tags) or 'general',
                'price_context': (
                    f"Price level: {restaurant.price_level} (1=budget, 4=luxury)" if restaurant.price_level else ''
                ),
                'specialty_dishes': _format_dishes(dishes),
                'existing_items': existing_text,
                'constraints': '\n'.join(constraint_lines),
                'count': constraints.count,
            },
            self.validator.validate_suggestions,
        )
        for warning in warnings:
            logger.info(f"Dropped suggestion for {restaurant.restaurant_id}: {warning}")

        excluded = {normalize_name(c) for c in constraints.exclude_categories}
        suggestions = []
        for entry in parsed['suggestions']:
            if normalize_name(entry['category']) in excluded:
                logger.info(f"Dropped suggestion '{entry['name']}' in excluded category {entry['category']}")
                continue
            based_on = entry['based_on_dish']
            suggestions.append(MenuItemSuggestion(
                suggestion_id=new_id(),
                restaurant_id=restaurant.restaurant_id,
                name=entry['name'],
                description=entry['description'],
                estimated_price=entry['estimated_price'],
                category=entry['category'],
                suggested_ingredients=entry['ingredients'],
                dietary_tags=entry['dietary_tags'],
                inspiration_source=f"Similar restaurants - {based_on or 'popular specialty dishes'}",
                based_on_specialty_dish=based_on,
                audit=audit,
            ))

        return suggestions[:constraints.count]
