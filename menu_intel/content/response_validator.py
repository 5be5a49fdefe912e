"""
Response Validator - Validates model output for structure before it is trusted
"""

import re
import json
from typing import Dict, List, Optional, Iterable

from utils.unicode_handler import clean_unicode_text, normalize_name

MAX_NAME_LENGTH = 120
MAX_DESCRIPTION_LENGTH = 1000


class ResponseValidator:
    """Validates model responses for each content capability"""

    def __init__(self, max_price: float = 500.0):
        self.max_price = max_price

    @staticmethod
    def _result() -> Dict:
        return {
            'valid': True,
            'errors': [],
            'warnings': [],
            'parsed_data': None,
        }

    def parse_json_response(self, response: str) -> Dict:
        """Parse a JSON object out of a model response"""
        text = (response or '').strip()
        if not text:
            raise ValueError("Empty response")

        # Try multiple parsing strategies
        candidates = [text]

        fenced = re.search(r'```(?:json)?\s*(\{[\s\S]*?\})\s*```', text, re.IGNORECASE)
        if fenced:
            candidates.append(fenced.group(1))

        braces = re.search(r'\{[\s\S]*\}', text)
        if braces:
            candidates.append(braces.group(0))

        for candidate in candidates:
            try:
                parsed = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                return parsed

        raise ValueError("No JSON object found in response")

    def validate_optimization(self, response: str) -> Dict:
        """
        Validate an optimized name/description proposal

        Returns:
            Dict with keys valid, errors, warnings and parsed_data
            (optimized_name, optimized_description, reason)
        """
        result = self._result()

        try:
            parsed = self.parse_json_response(response)
        except ValueError as e:
            result['errors'].append(f"Parse error: {e}")
            result['valid'] = False
            return result

        name = clean_unicode_text(parsed.get('optimizedName'))
        description = clean_unicode_text(parsed.get('optimizedDescription'))
        reason = clean_unicode_text(parsed.get('reason'))

        result['errors'].extend(self._check_name(name, 'optimizedName'))
        result['errors'].extend(self._check_text(description, 'optimizedDescription'))
        if not reason:
            result['warnings'].append("No optimization reason given")
            reason = "Enhanced based on demographic preferences"

        if result['errors']:
            result['valid'] = False
            return result

        result['parsed_data'] = {
            'optimized_name': name,
            'optimized_description': description,
            'reason': reason,
        }
        return result

    def validate_suggestions(self, response: str) -> Dict:
        """
        Validate a list of new item suggestions

        Entries missing a name, a description or a positive price are dropped
        with a warning. The response is invalid only when nothing usable is left.
        """
        result = self._result()

        try:
            parsed = self.parse_json_response(response)
        except ValueError as e:
            result['errors'].append(f"Parse error: {e}")
            result['valid'] = False
            return result

        entries = parsed.get('suggestions')
        if not isinstance(entries, list):
            result['errors'].append("Response has no 'suggestions' list")
            result['valid'] = False
            return result

        suggestions = []
        for i, entry in enumerate(entries, 1):
            if not isinstance(entry, dict):
                result['warnings'].append(f"Suggestion {i}: not an object")
                continue
            errors = self.validate_suggestion(entry, i)
            if errors:
                result['warnings'].extend(errors)
                continue
            suggestions.append({
                'name': clean_unicode_text(entry['name']),
                'description': clean_unicode_text(entry['description']),
                'estimated_price': round(self._as_price(entry.get('estimatedPrice')), 2),
                'category': clean_unicode_text(entry.get('category')) or 'entrees',
                'ingredients': self._string_list(entry.get('ingredients')),
                'dietary_tags': self._string_list(entry.get('dietaryTags')),
                'based_on_dish': clean_unicode_text(entry.get('basedOnDish')) or None,
            })

        if not suggestions:
            result['errors'].append("No valid suggestions in response")
            result['valid'] = False
            return result

        result['parsed_data'] = {'suggestions': suggestions}
        return result

    def validate_suggestion(self, entry: Dict, index: int) -> List[str]:
        """Validate a single suggestion entry"""
        errors = []
        prefix = f"Suggestion {index}"

        name = clean_unicode_text(entry.get('name'))
        errors.extend(f"{prefix}: {e}" for e in self._check_name(name, 'name'))
        errors.extend(f"{prefix}: {e}" for e in self._check_text(clean_unicode_text(entry.get('description')), 'description'))

        price = self._as_price(entry.get('estimatedPrice'))
        if price is None or price <= 0:
            errors.append(f"{prefix}: estimatedPrice must be a positive number")
        elif price > self.max_price:
            errors.append(f"{prefix}: estimatedPrice {price} is implausible")

        return errors

    def validate_description(self, response: str) -> Dict:
        """Validate a plain-text description"""
        result = self._result()
        text = clean_unicode_text(response)

        # Strip a leading label and wrapping quotes
        text = re.sub(r'^(new\s+)?description\s*:\s*', '', text, flags=re.IGNORECASE)
        text = text.strip().strip('"').strip()

        if text.startswith('{') or text.startswith('[') or '```' in text:
            result['errors'].append("Description must be plain text, got structured output")
        result['errors'].extend(self._check_text(text, 'description'))

        if result['errors']:
            result['valid'] = False
            return result

        result['parsed_data'] = {'description': text}
        return result

    def validate_recommendation(self, response: str, item_ids: Iterable[str]) -> Dict:
        """Validate recommendations; every id must refer to a candidate item"""
        result = self._result()
        known_ids = set(item_ids)

        try:
            parsed = self.parse_json_response(response)
        except ValueError as e:
            result['errors'].append(f"Parse error: {e}")
            result['valid'] = False
            return result

        entries = parsed.get('recommendations')
        if not isinstance(entries, list) or not entries:
            result['errors'].append("Response has no 'recommendations' list")
            result['valid'] = False
            return result

        recommendations = []
        seen = set()
        for i, entry in enumerate(entries, 1):
            item_id = str(entry.get('itemId', '')) if isinstance(entry, dict) else ''
            if item_id not in known_ids:
                result['errors'].append(f"Recommendation {i}: unknown item id '{item_id}'")
                continue
            if item_id in seen:
                result['warnings'].append(f"Recommendation {i}: duplicate item id '{item_id}'")
                continue
            seen.add(item_id)
            explanation = clean_unicode_text(entry.get('explanation'))
            if not explanation:
                result['errors'].append(f"Recommendation {i}: missing explanation")
                continue
            recommendations.append({'item_id': item_id, 'explanation': explanation})

        if result['errors']:
            result['valid'] = False
            return result

        result['parsed_data'] = {
            'target_segment': clean_unicode_text(parsed.get('targetSegment')) or 'general',
            'recommendations': recommendations,
        }
        return result

    @staticmethod
    def _check_name(name: str, field: str) -> List[str]:
        if not name:
            return [f"{field} is missing"]
        if len(name) > MAX_NAME_LENGTH:
            return [f"{field} is longer than {MAX_NAME_LENGTH} characters"]
        return []

    @staticmethod
    def _check_text(text: str, field: str) -> List[str]:
        if not text:
            return [f"{field} is missing"]
        if len(text) > MAX_DESCRIPTION_LENGTH:
            return [f"{field} is longer than {MAX_DESCRIPTION_LENGTH} characters"]
        return []

    @staticmethod
    def _as_price(value) -> Optional[float]:
        if isinstance(value, str):
            value = value.strip().lstrip('$')
        try:
            price = float(value)
        except (TypeError, ValueError):
            return None
        return None if price != price else price

    @staticmethod
    def _string_list(value) -> List[str]:
        if not isinstance(value, list):
            return []
        items = []
        seen = set()
        for entry in value:
            text = clean_unicode_text(str(entry)) if entry is not None else ''
            key = normalize_name(text)
            if text and key not in seen:
                seen.add(key)
                items.append(text)
        return items
