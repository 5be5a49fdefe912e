"""
Tests for content generation: provider fallback, prompts and output validation
"""

import copy
import json
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock, patch

# Add parent directory to path
import sys
import os
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.append(ROOT)

import anthropic

from menu_intel.config import DEFAULT_SETTINGS
from menu_intel.errors import GenerationFailed, InvalidRequest, RateLimited, TransientUpstream
from menu_intel.models import (
    AgeGroup, DemographicsSnapshot, DiningPattern, MenuItem, ReviewStatus, Restaurant,
    SimilarRestaurant, SimilarRestaurantSet, SpecialtyDish, TasteProfile
)
from menu_intel.content.orchestrator import (
    ContentOrchestrator, OptimizationOptions, SuggestionConstraints, build_demographic_insights
)
from menu_intel.content.prompt_engine import PromptEngine
from menu_intel.content.providers import (
    AnthropicProvider, GoogleProvider, OpenAIProvider, ProviderName, ProviderResponse, build_providers
)
from menu_intel.content.response_validator import ResponseValidator
from utils.rate_limiter import TokenBucket

PROMPT_DIR = os.path.join(ROOT, 'config', 'prompts')

OPTIMIZATION_JSON = json.dumps({
    'optimizedName': 'Slow-Braised Carnitas Tacos',
    'optimizedDescription': 'Citrus-braised pork, charred onion and salsa verde on warm corn tortillas.',
    'reason': 'Younger diners respond to process words and bright flavors.',
})


def fake_provider(name, texts=None, error=None):
    provider = Mock()
    provider.name = name
    if error is not None:
        provider.generate.side_effect = error
    else:
        provider.generate.side_effect = [
            ProviderResponse(text=t, provider=name.value, model=f"{name.value}-model") for t in texts
        ]
    return provider


def sample_profile():
    demographics = DemographicsSnapshot(
        entity_id='E1',
        age_groups=(
            AgeGroup('25-34', 40, ('spicy', 'street food')),
            AgeGroup('35-44', 25, ('comfort food',)),
            AgeGroup('18-24', 10, ('cheap eats',)),
        ),
        interests=('tacos', 'craft beer'),
        dining_patterns=(DiningPattern('late night', 30, ('22:00',)), DiningPattern('brunch', 20)),
    )
    dishes = (
        SpecialtyDish('carnitas tacos', 'Carnitas Tacos', 'urn:tag:specialty_dish:place:carnitas_tacos', 3, 0.8),
        SpecialtyDish('elote', 'Elote', 'urn:tag:specialty_dish:place:elote', 1, 0.7),
    )
    similar = SimilarRestaurantSet(
        entity_id='E1',
        restaurants=(SimilarRestaurant('s1', 'S1'), SimilarRestaurant('s2', 'S2'), SimilarRestaurant('s3', 'S3')),
        specialty_dishes=dishes,
        min_rating_filter=4.0,
        query_context={},
    )
    return TasteProfile('snap1', 'r1', 'E1', similar, demographics, restaurant_popularity=0.6)


class TestPromptEngine(unittest.TestCase):
    """Test prompt templates and versioning."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_shipped_templates_are_valid(self):
        """Test that every shipped template has its placeholders."""
        engine = PromptEngine(version='1.0', prompt_dir=PROMPT_DIR)

        for capability in ('optimize_item', 'generate_item_suggestions',
                           'enhance_description', 'explain_recommendation'):
            self.assertIn('{', engine.get_template(capability))

        versions = engine.list_versions()
        self.assertEqual(versions[0]['version'], '1.0')
        self.assertEqual(len(versions[0]['templates']), 4)

    def test_create_prompt_metadata(self):
        """Test the prompt payload and its metadata."""
        engine = PromptEngine(version='1.0', prompt_dir=PROMPT_DIR)

        prompt = engine.create_prompt(
            'explain_recommendation', customer_profile='age: 30', items='i1: Tacos - good', taste_context='none'
        )

        self.assertEqual(prompt['capability'], 'explain_recommendation')
        self.assertEqual(prompt['version'], '1.0')
        self.assertEqual(prompt['template_name'], 'explain_recommendation.txt')
        self.assertIn('i1: Tacos - good', prompt['prompt'])
        self.assertIn('"itemId"', prompt['prompt'])

    def test_missing_values_rejected(self):
        """Test that a prompt without all values is refused."""
        engine = PromptEngine(prompt_dir=self.temp_dir)

        with self.assertRaises(ValueError):
            engine.create_prompt('explain_recommendation', customer_profile='x')

    def test_unknown_version_falls_back_to_latest(self):
        """Test fallback to the newest version on disk."""
        for version in ('1.0', '1.2', '1.10'):
            Path(self.temp_dir, f"v{version}").mkdir()

        engine = PromptEngine(version='9.9', prompt_dir=self.temp_dir)

        self.assertEqual(engine.version, '1.10')

    def test_template_missing_placeholder_rejected(self):
        """Test that a template on disk without required placeholders is refused."""
        version_dir = Path(self.temp_dir, 'v1.0')
        version_dir.mkdir()
        (version_dir / 'enhance_description.txt').write_text('Describe {item_name}')

        engine = PromptEngine(version='1.0', prompt_dir=self.temp_dir)

        with self.assertRaises(ValueError):
            engine.get_template('enhance_description')

    def test_builtin_templates_without_directory(self):
        """Test that built-in templates are used when nothing is on disk."""
        engine = PromptEngine(prompt_dir=os.path.join(self.temp_dir, 'missing'))

        self.assertIn('{item_name}', engine.get_template('optimize_item'))


class TestResponseValidator(unittest.TestCase):
    """Test structural validation of model output."""

    def setUp(self):
        """Set up test fixtures."""
        self.validator = ResponseValidator()

    def test_optimization_with_surrounding_text(self):
        """Test that JSON is found inside prose or code fences."""
        fenced = f"Here you go:\n```json\n{OPTIMIZATION_JSON}\n```"

        result = self.validator.validate_optimization(fenced)

        self.assertTrue(result['valid'])
        self.assertEqual(result['parsed_data']['optimized_name'], 'Slow-Braised Carnitas Tacos')

    def test_optimization_missing_name(self):
        """Test that a proposal without a name is invalid."""
        result = self.validator.validate_optimization('{"optimizedDescription": "Tasty"}')

        self.assertFalse(result['valid'])
        self.assertIn('optimizedName is missing', result['errors'])

    def test_optimization_not_json(self):
        """Test that prose without JSON is invalid."""
        result = self.validator.validate_optimization('I cannot help with that.')

        self.assertFalse(result['valid'])

    def test_suggestions_drop_bad_entries(self):
        """Test that bad suggestions are dropped with warnings."""
        response = json.dumps({'suggestions': [
            {'name': 'Birria Ramen', 'description': 'Consommé noodles', 'estimatedPrice': '$16.50',
             'category': 'Entrees', 'ingredients': ['beef', 'Beef', 'noodles']},
            {'name': '', 'description': 'No name', 'estimatedPrice': 10},
            {'name': 'Free Lunch', 'description': 'Costs nothing', 'estimatedPrice': 0},
        ]})

        result = self.validator.validate_suggestions(response)

        self.assertTrue(result['valid'])
        suggestions = result['parsed_data']['suggestions']
        self.assertEqual(len(suggestions), 1)
        self.assertEqual(suggestions[0]['estimated_price'], 16.5)
        self.assertEqual(suggestions[0]['ingredients'], ['beef', 'noodles'])
        self.assertEqual(len(result['warnings']), 2)

    def test_suggestions_all_bad(self):
        """Test that a response with no usable suggestion is invalid."""
        result = self.validator.validate_suggestions('{"suggestions": [{"name": "x"}]}')

        self.assertFalse(result['valid'])

    def test_description_plain_text(self):
        """Test description cleanup and structured-output rejection."""
        result = self.validator.validate_description('Description: "Smoky, bright and crunchy."')
        self.assertTrue(result['valid'])
        self.assertEqual(result['parsed_data']['description'], 'Smoky, bright and crunchy.')

        result = self.validator.validate_description('{"description": "x"}')
        self.assertFalse(result['valid'])

    def test_recommendation_unknown_item(self):
        """Test that recommendations must reference candidate items."""
        response = json.dumps({'targetSegment': 'night owls', 'recommendations': [
            {'itemId': 'i1', 'explanation': 'Spicy'},
            {'itemId': 'i9', 'explanation': 'Not on the menu'},
        ]})

        result = self.validator.validate_recommendation(response, ['i1', 'i2'])

        self.assertFalse(result['valid'])
        self.assertEqual(len(result['errors']), 1)


class TestContentOrchestrator(unittest.TestCase):
    """Test provider fallback and the capability operations."""

    def setUp(self):
        """Set up test fixtures."""
        self.engine = PromptEngine(version='1.0', prompt_dir=PROMPT_DIR)
        self.profile = sample_profile()
        self.restaurant = Restaurant('r1', 'Casa Verde', 'Austin', 'TX', 'E1', price_level=2, cuisine='mexican')
        self.item = MenuItem('i1', 'r1', 'Pork Tacos', 'Three pork tacos', 12.0, 'entrees', ['pork', 'onion'])

    def test_fallback_to_second_provider(self):
        """Test that a timed-out first provider falls through to the second."""
        first = fake_provider(ProviderName.ANTHROPIC, error=TransientUpstream('Anthropic unreachable: timeout'))
        second = fake_provider(ProviderName.OPENAI, [OPTIMIZATION_JSON])
        orchestrator = ContentOrchestrator([first, second], self.engine)

        result = orchestrator.optimize_item(self.item, self.profile, self.restaurant)

        self.assertEqual(result.value.optimized_name, 'Slow-Braised Carnitas Tacos')
        self.assertEqual(result.audit.provider, 'openai')
        self.assertEqual(result.audit.capability, 'optimize_item')
        self.assertEqual(result.audit.prompt_version, '1.0')
        self.assertEqual(len(result.audit.attempts), 1)
        self.assertEqual(result.audit.attempts[0][0], 'anthropic')
        self.assertIn('TransientUpstream', result.audit.attempts[0][1])

    def test_malformed_output_falls_through(self):
        """Test that malformed output is treated like a provider failure."""
        first = fake_provider(ProviderName.ANTHROPIC, ['not json at all'])
        second = fake_provider(ProviderName.GOOGLE, [OPTIMIZATION_JSON])
        orchestrator = ContentOrchestrator([first, second], self.engine)

        result = orchestrator.optimize_item(self.item, self.profile, self.restaurant)

        self.assertEqual(result.audit.provider, 'google')
        self.assertIn('MalformedOutput', result.audit.attempts[0][1])

    def test_all_providers_fail(self):
        """Test that GenerationFailed lists every attempt."""
        first = fake_provider(ProviderName.ANTHROPIC, error=RateLimited('429'))
        second = fake_provider(ProviderName.OPENAI, error=InvalidRequest('400'))
        orchestrator = ContentOrchestrator([first, second], self.engine)

        with self.assertRaises(GenerationFailed) as ctx:
            orchestrator.optimize_item(self.item, self.profile, self.restaurant)

        self.assertEqual([a[0] for a in ctx.exception.attempts], ['anthropic', 'openai'])
        self.assertEqual(ctx.exception.capability, 'optimize_item')

    def test_sdk_validation_error_falls_through(self):
        """Test that an Anthropic SDK error outside the HTTP family still falls back."""
        client = Mock()
        client.messages.create.side_effect = anthropic.APIResponseValidationError(
            response=Mock(status_code=200, headers={}), body=None
        )
        first = AnthropicProvider('key', TokenBucket(rate=1000, burst=5), client=client,
                                  max_retries=2, backoff_base=0, backoff_max=0)
        second = fake_provider(ProviderName.OPENAI, ['Crispy pork, bright salsa, warm tortillas.'])
        orchestrator = ContentOrchestrator([first, second], self.engine)

        result = orchestrator.enhance_description(self.item, self.profile)

        self.assertEqual(result.value, 'Crispy pork, bright salsa, warm tortillas.')
        self.assertEqual(result.audit.provider, 'openai')
        self.assertIn('InvalidRequest', result.audit.attempts[0][1])
        self.assertEqual(client.messages.create.call_count, 1)

    def test_no_providers(self):
        """Test that an empty provider list fails cleanly."""
        orchestrator = ContentOrchestrator([], self.engine)

        with self.assertRaises(GenerationFailed):
            orchestrator.enhance_description(self.item, self.profile)

    def test_prompt_carries_context(self):
        """Test that demographics and specialty dishes reach the prompt."""
        provider = fake_provider(ProviderName.ANTHROPIC, [OPTIMIZATION_JSON])
        orchestrator = ContentOrchestrator([provider], self.engine)

        orchestrator.optimize_item(self.item, self.profile, self.restaurant, OptimizationOptions(style='playful'))

        prompt_data, capability = provider.generate.call_args[0]
        self.assertEqual(capability, 'optimize_item')
        self.assertIn('Carnitas Tacos (popular at 3 restaurants', prompt_data['prompt'])
        self.assertIn('Target age groups: 25-34 (40%), 35-44 (25%)', prompt_data['prompt'])
        self.assertIn('Style: playful', prompt_data['prompt'])

    def test_enhance_description(self):
        """Test the plain-text description capability."""
        provider = fake_provider(ProviderName.ANTHROPIC, ['Crispy pork, bright salsa, warm tortillas.'])
        orchestrator = ContentOrchestrator([provider], self.engine)

        result = orchestrator.enhance_description(self.item, self.profile)

        self.assertEqual(result.value, 'Crispy pork, bright salsa, warm tortillas.')

    def test_generate_item_suggestions(self):
        """Test suggestion records and excluded categories."""
        response = json.dumps({'suggestions': [
            {'name': 'Elote Bowl', 'description': 'Street corn with cotija', 'estimatedPrice': 9,
             'category': 'appetizers', 'basedOnDish': 'Elote'},
            {'name': 'Churro Sundae', 'description': 'Churros and ice cream', 'estimatedPrice': 8,
             'category': 'Desserts'},
            {'name': 'Carnitas Bowl', 'description': 'Carnitas over rice', 'estimatedPrice': 14,
             'category': 'entrees', 'basedOnDish': 'Carnitas Tacos'},
        ]})
        provider = fake_provider(ProviderName.ANTHROPIC, [response])
        orchestrator = ContentOrchestrator([provider], self.engine)

        suggestions = orchestrator.generate_item_suggestions(
            self.restaurant, list(self.profile.specialty_dishes), [self.item],
            SuggestionConstraints(count=2, exclude_categories=['desserts']),
        )

        self.assertEqual([s.name for s in suggestions], ['Elote Bowl', 'Carnitas Bowl'])
        self.assertTrue(all(s.status is ReviewStatus.PENDING for s in suggestions))
        self.assertEqual(suggestions[0].inspiration_source, 'Similar restaurants - Elote')
        self.assertEqual(suggestions[0].audit.provider, 'anthropic')
        prompt_data, _ = provider.generate.call_args[0]
        self.assertIn('Pork Tacos', prompt_data['prompt'])
        self.assertIn('CATEGORIES TO EXCLUDE: desserts', prompt_data['prompt'])

    def test_explain_recommendation(self):
        """Test recommendation output."""
        other = MenuItem('i2', 'r1', 'Elote', 'Street corn', 6.0, 'appetizers')
        response = json.dumps({'targetSegment': 'late-night regulars', 'recommendations': [
            {'itemId': 'i2', 'explanation': 'A quick, shareable snack.'},
        ]})
        provider = fake_provider(ProviderName.ANTHROPIC, [response])
        orchestrator = ContentOrchestrator([provider], self.engine)

        recommendation = orchestrator.explain_recommendation({'age': '28'}, [self.item, other], [self.profile])

        self.assertEqual(recommendation.recommended_item_ids, ['i2'])
        self.assertEqual(recommendation.explanations['i2'], 'A quick, shareable snack.')
        self.assertEqual(recommendation.target_segment, 'late-night regulars')

    def test_explain_recommendation_requires_items(self):
        """Test that an empty candidate list is a caller error."""
        orchestrator = ContentOrchestrator([], self.engine)

        with self.assertRaises(InvalidRequest):
            orchestrator.explain_recommendation({}, [], [])


class TestDemographicInsights(unittest.TestCase):
    """Test the audience summary lines."""

    def test_dominant_segments_by_default(self):
        """Test that the two largest age groups are used without a selection."""
        insights = build_demographic_insights(sample_profile().demographics)

        self.assertEqual(insights[0], 'Target age groups: 25-34 (40%), 35-44 (25%)')
        self.assertIn('Age group preferences: spicy, street food, comfort food', insights)
        self.assertIn('Primary dining pattern: late night (30% frequency)', insights)
        self.assertIn('Popular dining times: 22:00', insights)

    def test_selected_segments(self):
        """Test explicit age group and interest selection."""
        insights = build_demographic_insights(sample_profile().demographics, ['18-24'], ['craft beer'])

        self.assertEqual(insights[0], 'Target age groups: 18-24 (10%)')
        self.assertIn('Target interests: craft beer', insights)

    def test_no_demographics(self):
        """Test that missing demographics give no lines."""
        self.assertEqual(build_demographic_insights(None), [])


class TestProviders(unittest.TestCase):
    """Test provider adapters with mocked transports."""

    def test_anthropic_maps_server_error(self):
        """Test that Anthropic 5xx errors are retried then surfaced as transient."""
        client = Mock()
        response = Mock(status_code=503, headers={})
        client.messages.create.side_effect = anthropic.InternalServerError(
            'overloaded', response=response, body=None
        )
        provider = AnthropicProvider('key', TokenBucket(rate=1000, burst=5), client=client,
                                     max_retries=1, backoff_base=0, backoff_max=0)

        with self.assertRaises(TransientUpstream):
            provider.generate({'prompt': 'hi'}, 'enhance_description')

        self.assertEqual(client.messages.create.call_count, 2)

    def test_anthropic_success(self):
        """Test text extraction from an Anthropic message."""
        client = Mock()
        block = Mock(type='text', text='Hello')
        client.messages.create.return_value = Mock(content=[block], usage=Mock(input_tokens=3, output_tokens=1))
        provider = AnthropicProvider('key', TokenBucket(rate=1000, burst=5), client=client)

        response = provider.generate({'prompt': 'hi'}, 'enhance_description')

        self.assertEqual(response.text, 'Hello')
        self.assertEqual(response.provider, 'anthropic')
        self.assertEqual(response.usage, {'input_tokens': 3, 'output_tokens': 1})

    def test_openai_request(self):
        """Test the chat completions payload and reply parsing."""
        http = Mock()
        http.post_json.return_value = {'choices': [{'message': {'content': 'Hi'}}], 'usage': {'prompt_tokens': 5}}
        provider = OpenAIProvider(http, 'sk-test', model='gpt-test')

        response = provider.generate({'prompt': 'hello'}, 'enhance_description')

        self.assertEqual(response.text, 'Hi')
        url, payload = http.post_json.call_args[0]
        self.assertTrue(url.endswith('/chat/completions'))
        self.assertEqual(payload['model'], 'gpt-test')
        self.assertEqual(http.post_json.call_args[1]['headers'], {'Authorization': 'Bearer sk-test'})

    def test_google_missing_candidates(self):
        """Test that an empty Gemini reply is rejected."""
        http = Mock()
        http.post_json.return_value = {'candidates': []}
        provider = GoogleProvider(http, 'g-key')

        with self.assertRaises(InvalidRequest):
            provider.generate({'prompt': 'hello'}, 'enhance_description')

    @patch('menu_intel.content.providers.anthropic.Anthropic')
    def test_build_providers_skips_missing_keys(self, mock_anthropic):
        """Test provider construction order and key handling."""
        settings = copy.deepcopy(DEFAULT_SETTINGS)
        settings['providers']['order'] = ['google', 'anthropic', 'openai']
        settings['providers']['google']['api_key'] = 'g-key'
        settings['providers']['anthropic']['api_key'] = 'a-key'
        settings['providers']['openai']['api_key'] = ''

        providers = build_providers(settings)

        self.assertEqual([p.name for p in providers], [ProviderName.GOOGLE, ProviderName.ANTHROPIC])
        mock_anthropic.assert_called_once()
        self.assertEqual(mock_anthropic.call_args[1]['max_retries'], 0)


if __name__ == '__main__':
    unittest.main()
