"""
Prompt Engine - Manages per-capability prompt templates with version tracking
"""

import re
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

# Placeholders each capability's template must contain
REQUIRED_PLACEHOLDERS = {
    'optimize_item': {'item_name', 'item_description', 'item_details', 'cuisine',
                      'demographic_insights', 'specialty_dishes', 'style', 'target_audience'},
    'generate_item_suggestions': {'restaurant_name', 'location', 'cuisine', 'price_context',
                                  'specialty_dishes', 'existing_items', 'constraints', 'count'},
    'enhance_description': {'item_name', 'item_description', 'item_details',
                            'demographic_insights', 'style', 'target_audience'},
    'explain_recommendation': {'customer_profile', 'items', 'taste_context'},
}

DEFAULT_TEMPLATES = {
    'optimize_item': """You are a professional menu consultant helping to optimize menu item names and descriptions based on customer demographics and successful dishes from similar restaurants.

RESTAURANT CONTEXT:
Cuisine Type: {cuisine}

MENU ITEM TO OPTIMIZE:
Name: "{item_name}"
Description: "{item_description}"
{item_details}

CUSTOMER DEMOGRAPHICS:
{demographic_insights}

SPECIALTY DISHES FROM SIMILAR RESTAURANTS:
{specialty_dishes}

OPTIMIZATION REQUIREMENTS:
- Style: {style}
- Target Audience: {target_audience}
- Keep the essence and accuracy of the original dish
- Make the name and description more appealing to the target demographic
- Draw on the naming and description techniques of the specialty dishes

Respond with JSON only, in this format:
{{
  "optimizedName": "Enhanced dish name",
  "optimizedDescription": "Enhanced description",
  "reason": "Why these changes appeal to the demographic"
}}""",

    'generate_item_suggestions': """You are a professional menu consultant creating new menu item suggestions for a restaurant based on popular dishes from similar restaurants in the area.

RESTAURANT PROFILE:
Name: {restaurant_name}
Location: {location}
Cuisine Type: {cuisine}
{price_context}

POPULAR SPECIALTY DISHES FROM SIMILAR RESTAURANTS:
{specialty_dishes}

EXISTING MENU ITEMS TO AVOID DUPLICATING:
{existing_items}

{constraints}

REQUIREMENTS:
- Generate {count} unique menu item suggestions
- Base suggestions on the popular specialty dishes above
- Adapt dishes to the restaurant's cuisine style and price level
- Provide realistic price estimates
- Include suggested ingredients and dietary tags where appropriate

Respond with JSON only, in this format:
{{
  "suggestions": [
    {{
      "name": "Dish name",
      "description": "Description highlighting key ingredients",
      "estimatedPrice": 15.99,
      "category": "appetizers",
      "ingredients": ["ingredient"],
      "dietaryTags": ["vegetarian"],
      "basedOnDish": "Specialty dish this was inspired by"
    }}
  ]
}}""",

    'enhance_description': """You are a menu copywriter. Rewrite the description of this dish so it appeals to the target audience without changing what the dish is.

DISH:
Name: "{item_name}"
Current description: "{item_description}"
{item_details}

AUDIENCE:
{demographic_insights}
Target Audience: {target_audience}
Style: {style}

Respond with the new description only, as plain text of at most three sentences.""",

    'explain_recommendation': """You are a restaurant host recommending dishes to a guest.

GUEST PROFILE:
{customer_profile}

CANDIDATE DISHES (id: name - description):
{items}

LOCAL TASTE CONTEXT:
{taste_context}

Pick the dishes that best fit this guest and explain each choice in one sentence.
Respond with JSON only, in this format:
{{
  "targetSegment": "Short label for the guest",
  "recommendations": [
    {{"itemId": "id from the list", "explanation": "Why it fits"}}
  ]
}}""",
}


class PromptEngine:
    """Manages prompt templates with version tracking"""

    def __init__(self, version: str = "1.0", prompt_dir: str = "config/prompts"):
        self.version = version
        self.prompt_dir = Path(prompt_dir)
        self.template_dir = self.prompt_dir / f"v{version}"
        self._templates: Dict[str, str] = {}

        if not self.template_dir.exists():
            latest = self._get_latest_version()
            if latest:
                logger.warning(f"Prompt version {version} not found, using v{latest}")
                self.version = latest
                self.template_dir = self.prompt_dir / f"v{latest}"
            else:
                logger.warning(f"No prompt versions under {self.prompt_dir}, using built-in templates")

    def get_template(self, capability: str) -> str:
        """Template for a capability, from disk when present"""
        if capability not in REQUIRED_PLACEHOLDERS:
            raise ValueError(f"Unknown capability: {capability}")

        if capability not in self._templates:
            template_file = self.template_dir / f"{capability}.txt"
            if template_file.exists():
                with open(template_file, 'r', encoding='utf-8') as f:
                    template = f.read()
            else:
                template = DEFAULT_TEMPLATES[capability]
            self._validate_template_placeholders(capability, template)
            self._templates[capability] = template

        return self._templates[capability]

    def _get_latest_version(self) -> Optional[str]:
        """Find the latest prompt version"""
        versions = [v['version'] for v in self.list_versions()]
        if not versions:
            return None
        return sorted(versions, key=_version_key)[-1]

    @staticmethod
    def _validate_template_placeholders(capability: str, template: str) -> None:
        """Validate that all required placeholders exist in the template"""
        found_placeholders = set(re.findall(r'\{(\w+)\}', template))
        missing_placeholders = REQUIRED_PLACEHOLDERS[capability] - found_placeholders
        if missing_placeholders:
            raise ValueError(
                f"Template for {capability} is missing required placeholders: "
                f"{', '.join(sorted(missing_placeholders))}"
            )

    def create_prompt(self, capability: str, **values) -> Dict:
        """Create a versioned prompt with metadata"""
        template = self.get_template(capability)
        missing = REQUIRED_PLACEHOLDERS[capability] - set(values)
        if missing:
            raise ValueError(f"Missing prompt values for {capability}: {', '.join(sorted(missing))}")

        return {
            'prompt': template.format(**values),
            'capability': capability,
            'version': self.version,
            'template_name': f"{capability}.txt",
            'generated_at': datetime.now(timezone.utc).isoformat(),
        }

    def list_versions(self) -> List[Dict]:
        """List all available prompt versions"""
        versions = []

        if not self.prompt_dir.exists():
            return versions

        for version_dir in sorted(self.prompt_dir.iterdir()):
            if not (version_dir.is_dir() and version_dir.name.startswith('v')):
                continue
            version = version_dir.name[1:]
            try:
                _version_key(version)
            except ValueError:
                continue

            changelog = ""
            changelog_file = version_dir / "changelog.txt"
            if changelog_file.exists():
                with open(changelog_file, 'r') as f:
                    changelog = f.read().split('\n')[0]

            versions.append({
                'version': version,
                'templates': sorted(p.stem for p in version_dir.glob('*.txt') if p.stem in REQUIRED_PLACEHOLDERS),
                'changelog': changelog,
                'path': str(version_dir),
            })

        return versions


def _version_key(version: str):
    return tuple(int(part) for part in version.split('.'))
