"""
Unicode handling utilities for consistent text processing
"""

import unicodedata
import re
from typing import Optional

def clean_unicode_text(text: Optional[str]) -> str:
    """Clean and normalize Unicode text coming back from upstream services"""
    if not text or not isinstance(text, str):
        return ""
    
    # NFKC keeps accented letters composed (jalapeño stays jalapeño)
    text = unicodedata.normalize('NFKC', text)
    
    # Remove non-printable characters except newlines and tabs
    text = ''.join(char for char in text if unicodedata.category(char)[0] != 'C' or char in '\n\t')
    
    # Replace multiple spaces with single space
    text = re.sub(r'\s+', ' ', text)
    
    return text.strip()

def normalize_name(name: Optional[str]) -> str:
    """Comparison key for dish and item names: case-folded, single-spaced"""
    text = clean_unicode_text(name)
    if not text:
        return ""
    text = text.casefold()
    # Curly quotes and dashes collapse to their ASCII forms
    text = text.translate(_PUNCTUATION_MAP)
    return re.sub(r'\s+', ' ', text).strip()

def display_name(name: Optional[str]) -> str:
    """Readable form of a dish name, title-cased when upstream sent it all lower case"""
    text = clean_unicode_text(name)
    if text and text == text.lower():
        return text.title()
    return text

_PUNCTUATION_MAP = str.maketrans({
    '‘': "'",
    '’': "'",
    '“': '"',
    '”': '"',
    '–': '-',
    '—': '-',
})
