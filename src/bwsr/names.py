"""Human-memorable session names."""

import random
import re

ADJECTIVES = [
    "happy", "calm", "swift", "bright", "quiet", "bold", "keen", "warm",
    "cool", "fair", "kind", "wise", "brave", "quick", "sharp", "clear",
    "fresh", "light", "soft", "pure", "neat", "prime", "true", "fine",
]

NOUNS = [
    "fox", "bear", "owl", "wolf", "deer", "hawk", "lynx", "crow",
    "dove", "hare", "seal", "wren", "moth", "swan", "toad", "wasp",
    "crab", "goat", "lamb", "newt", "puma", "ram", "yak", "elk",
]

# Lowercase alphanumerics separated by single hyphens, no leading/trailing hyphen
SESSION_NAME_PATTERN = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")
MAX_SESSION_NAME_LENGTH = 64


def generate_session_name() -> str:
    return f"{random.choice(ADJECTIVES)}-{random.choice(NOUNS)}"


def is_valid_session_name(name: str) -> bool:
    if not name or len(name) > MAX_SESSION_NAME_LENGTH:
        return False
    return SESSION_NAME_PATTERN.fullmatch(name) is not None
