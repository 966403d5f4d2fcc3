"""
Text heuristics shared by the Detective Bureau agents
"""
import re
from typing import List, Set

_WORD_SPLIT = re.compile(r'\W+')

COLORS = ('black', 'white', 'red', 'blue', 'green', 'gray', 'grey', 'brown',
          'yellow', 'orange', 'purple', 'pink')
CLOTHING = ('hoodie', 'jacket', 'coat', 'hat', 'cap', 'jeans', 'pants', 'sneakers',
            'boots', 'backpack', 'bag', 'mask')
PHYSICAL = ('male', 'female', 'tall', 'short', 'heavy', 'slim', 'beard', 'glasses')

DESCRIPTOR_VOCABULARY = COLORS + CLOTHING + PHYSICAL

MIN_SHARED_DESCRIPTORS = 2


def word_set(text: str) -> Set[str]:
    return {w for w in _WORD_SPLIT.split((text or '').lower()) if w}


def jaccard(text1: str, text2: str) -> float:
    """Word-set Jaccard similarity; 0.0 when either side is empty"""
    words1, words2 = word_set(text1), word_set(text2)
    if not words1 or not words2:
        return 0.0
    return len(words1 & words2) / len(words1 | words2)


def extract_descriptors(text: str) -> List[str]:
    """
    Suspect descriptors mentioned in free text.

    Substring matching, so 'female' also yields 'male' and 'capped' yields
    'cap'. Matching across incidents tolerates this because it needs at
    least two shared descriptors.
    """
    lower = (text or '').lower()
    return [d for d in DESCRIPTOR_VOCABULARY if d in lower]


def shared_descriptors(text1: str, text2: str) -> Set[str]:
    return set(extract_descriptors(text1)) & set(extract_descriptors(text2))
