"""Static topic catalogue, legacy slug resolution and the default topic router."""

from __future__ import annotations

import logging
import random
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)

CUSTOM_TOPIC_PREFIX = "custom:"


@dataclass(frozen=True)
class Topic:
    slug: str
    name: str
    description: str
    core_concept: str
    domain: str
    emoji: str
    min_age: int
    max_age: int

    def fits_age(self, age_years: int) -> bool:
        return self.min_age <= age_years <= self.max_age


@dataclass(frozen=True)
class TopicSuggestion:
    """Shape returned by a topic router; the first suggestion is authoritative."""

    slug: str
    name: str
    emoji: str
    domain: str
    reason_tag: str


@dataclass
class RouterContext:
    learner_id: str
    age_years: int
    interests: Sequence[str] = field(default_factory=tuple)
    skill_progress: Mapping[str, float] = field(default_factory=dict)
    current_skill_slug: Optional[str] = None
    recent_topic_slugs: Sequence[str] = field(default_factory=tuple)


class TopicRouter(Protocol):
    def suggest(self, context: RouterContext) -> List[TopicSuggestion]:
        ...


@dataclass(frozen=True)
class ResolvedTopic:
    slug: str
    topic: Topic
    remapped: bool


TOPICS: Sequence[Topic] = (
    Topic("flying-animals", "Animals that fly", "Birds, bats and insects that move through the air",
          "Wings push air down so the animal is lifted up", "nature", "🦅", 5, 9),
    Topic("growing-plants", "Plants that grow", "How a seed becomes a plant",
          "Plants need water, light and soil to grow", "nature", "🌱", 5, 9),
    Topic("ocean-life", "Life in the ocean", "Creatures that live under the sea",
          "Sea animals have bodies adapted to living in water", "nature", "🐙", 5, 9),
    Topic("solar-system", "The solar system", "The Sun and the planets that travel around it",
          "Planets orbit the Sun, pulled by gravity", "space", "🪐", 6, 9),
    Topic("moon-phases", "Phases of the Moon", "Why the Moon seems to change shape",
          "We see different parts of the Moon lit by the Sun", "space", "🌙", 6, 9),
    Topic("beating-heart", "Your beating heart", "The heart and how it moves blood",
          "The heart is a muscle that pumps blood around the body", "body", "❤️", 6, 9),
    Topic("food-as-fuel", "Food is fuel", "Why our body needs different foods",
          "Food gives the body energy and materials to grow", "body", "🍎", 5, 9),
    Topic("push-and-pull", "Pushes and pulls", "Forces that make things move or stop",
          "A force is a push or a pull that changes motion", "science", "🧲", 5, 9),
    Topic("sound-vibrates", "Sound is a vibration", "How sounds travel to our ears",
          "Sound is made when something vibrates", "science", "🥁", 6, 9),
    Topic("water-cycle", "The water cycle", "Rain, clouds and rivers",
          "Water evaporates, forms clouds and falls again as rain", "science", "🌧️", 6, 9),
    Topic("prehistoric-life", "Prehistoric life", "Dinosaurs and the animals of long ago",
          "Fossils tell us about animals that lived long ago", "history", "🦕", 5, 9),
    Topic("timelines", "Timelines", "Putting events in order",
          "A timeline shows what happened first, next and last", "history", "⏳", 7, 9),
    Topic("reading-maps", "What maps are", "Maps, directions and symbols",
          "A map is a small drawing of a real place", "geography", "🗺️", 6, 9),
    Topic("children-around-the-world", "Children around the world", "How children live in other countries",
          "People live in different ways but share many needs", "culture", "🌍", 5, 9),
    Topic("how-computers-think", "How computers think", "Instructions and step-by-step thinking",
          "Computers follow instructions called programs", "technology", "💻", 7, 9),
    Topic("passing-on-traditions", "Passing on traditions", "Songs, stories and celebrations families share",
          "Traditions are passed from older to younger people", "culture", "🎉", 6, 9),
)

# Slugs from the earlier, single-word taxonomy that may still appear in old
# histories, bookmarks and router output.
LEGACY_TOPIC_ALIASES: Dict[str, str] = {
    "animals": "flying-animals",
    "animales": "flying-animals",
    "dinosaurs": "prehistoric-life",
    "dinosaurios": "prehistoric-life",
    "space": "solar-system",
    "espacio": "solar-system",
    "sistema-solar": "solar-system",
    "science": "push-and-pull",
    "ciencia": "push-and-pull",
    "technology": "how-computers-think",
    "tecnologia": "how-computers-think",
    "history": "timelines",
    "historia": "timelines",
    "geography": "reading-maps",
    "geografia": "reading-maps",
    "culture": "children-around-the-world",
    "cultura": "children-around-the-world",
    "music": "sound-vibrates",
    "musica": "sound-vibrates",
    "cooking": "food-as-fuel",
    "cocina": "food-as-fuel",
    "sports": "push-and-pull",
    "deportes": "push-and-pull",
    "nature": "growing-plants",
    "naturaleza": "growing-plants",
    "art": "passing-on-traditions",
    "arte": "passing-on-traditions",
}

_TOPICS_BY_SLUG: Dict[str, Topic] = {topic.slug: topic for topic in TOPICS}


def normalize_text(value: str) -> str:
    """Lowercase, strip diacritics and collapse non-alphanumerics to single spaces."""

    decomposed = unicodedata.normalize("NFD", value or "")
    stripped = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    cleaned = re.sub(r"[^a-z0-9]+", " ", stripped.lower())
    return cleaned.strip()


def get_topic(slug: str) -> Optional[Topic]:
    return _TOPICS_BY_SLUG.get(slug)


def topics_for_age(age_years: int) -> List[Topic]:
    return [topic for topic in TOPICS if topic.fits_age(age_years)]


def is_custom_topic(slug: Optional[str]) -> bool:
    return bool(slug) and str(slug).startswith(CUSTOM_TOPIC_PREFIX)


def parse_custom_topic(slug: str) -> str:
    return slug[len(CUSTOM_TOPIC_PREFIX):].strip()


def resolve_topic_slug(
    raw_slug: str,
    age_years: int,
    catalogue: Sequence[Topic] = TOPICS,
    aliases: Mapping[str, str] = LEGACY_TOPIC_ALIASES,
) -> Optional[ResolvedTopic]:
    """Resolve a possibly stale slug: exact match, then alias table, then fuzzy search."""

    requested_slug = (raw_slug or "").strip().lower()
    if not requested_slug:
        return None

    by_slug = {topic.slug: topic for topic in catalogue}
    direct = by_slug.get(requested_slug)
    if direct is not None:
        return ResolvedTopic(direct.slug, direct, remapped=False)

    mapped = aliases.get(requested_slug)
    if mapped and mapped in by_slug:
        return ResolvedTopic(mapped, by_slug[mapped], remapped=True)

    requested = normalize_text(requested_slug)
    tokens = [token for token in requested.split(" ") if len(token) >= 3]
    if not tokens:
        return None

    best: Optional[Topic] = None
    best_score = 0
    for topic in catalogue:
        haystack = normalize_text(f"{topic.slug} {topic.name} {topic.description}")
        score = 0
        if requested in haystack:
            score += 5
        score += sum(1 for token in tokens if token in haystack)
        if score == 0:
            continue
        if topic.fits_age(age_years):
            score += 2
        if score > best_score:
            best, best_score = topic, score

    if best is None:
        return None
    return ResolvedTopic(best.slug, best, remapped=True)


class HistoryAwareTopicRouter:
    """Default router: prefers interest domains and avoids recently read topics."""

    def __init__(self, catalogue: Sequence[Topic] = TOPICS, rng: Optional[random.Random] = None):
        self.catalogue = tuple(catalogue)
        self._rng = rng or random.Random()

    def suggest(self, context: RouterContext) -> List[TopicSuggestion]:
        recent = set(context.recent_topic_slugs)
        interests = {normalize_text(tag) for tag in context.interests}
        candidates = [topic for topic in self.catalogue if topic.fits_age(context.age_years)]
        fresh = [topic for topic in candidates if topic.slug not in recent] or candidates

        def _rank(topic: Topic) -> tuple:
            interest_hit = topic.domain in interests
            mastery = context.skill_progress.get(topic.slug, 0.0)
            return (0 if interest_hit else 1, mastery, self._rng.random())

        suggestions = []
        for topic in sorted(fresh, key=_rank):
            if topic.domain in interests:
                reason = "interest"
            elif topic.slug in context.skill_progress:
                reason = "reinforce"
            else:
                reason = "explore"
            suggestions.append(TopicSuggestion(topic.slug, topic.name, topic.emoji, topic.domain, reason))
        return suggestions


def random_topic_for_age(age_years: int, rng: Optional[random.Random] = None) -> Optional[Topic]:
    pool = topics_for_age(age_years) or list(TOPICS)
    if not pool:
        return None
    return (rng or random).choice(pool)
