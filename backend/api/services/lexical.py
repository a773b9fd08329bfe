"""Filler-word, vocabulary and language-mixing analysis over a timed transcript.

Words are classified by a dictionary lookup in the word's language followed by
three spelling patterns (drawn-out vowels, repeated consonants, short
consonant clusters). Classification is recomputed for every word handed in,
so callers cannot inject ``is_filler_word`` or ``word_class`` values.
"""

import logging
import math
import re
from collections import Counter, defaultdict
from functools import lru_cache
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

import nltk
from nltk.corpus import stopwords

from .config import LexicalConfig
from .models import (
    FillerWordCount,
    FillerWordStat,
    LanguageMixing,
    LexicalResult,
    PauseStats,
    RawWord,
    SentenceStats,
    TranscriptWord,
    VocabularyStats,
    WordClass,
)

logger = logging.getLogger(__name__)


# -------- Dictionaries --------
_RU_FILLERS = [
    "эм", "эмм", "эммм", "ээм", "ээмм", "ах", "ахх", "аххх", "ааа", "ааах",
    "ну", "нуу", "нууу", "н-ну", "ну-у", "ээ", "ээээ", "э-э", "э-э-э",
    "ой", "ойй", "ойойой", "ох", "охх", "уф", "уфф", "уффф",
    "так", "значит", "короче", "типа", "как бы", "как-бы", "вот", "ну это",
    "в общем", "в принципе", "собственно", "кстати", "между прочим",
    "понимаете", "знаете", "видите ли", "ну как сказать", "как это", "ну да",
]
_RU_PAUSES = ["мм", "ммм", "мммм", "хм", "хмм", "тс", "тсс", "тссс", "шш", "шшш"]
_RU_NOISE = ["пф", "пфф", "пффф", "бр", "брр", "фу", "фуу"]

_KK_FILLERS = [
    "әм", "әмм", "әммм", "ээм", "ээмм", "ах", "ахх", "аххх", "ааа", "ааах",
    "ээ", "ээээ", "э-э", "э-э-э", "ой", "ойй", "ох", "охх", "уф", "уфф",
    "міне", "осылай", "яғни", "қысқасы", "түрі", "сияқты", "дегенмен", "сонда",
    "енді", "ал", "сонымен", "демек", "түсінесіз бе", "білесіз бе",
    "көресіз бе", "қалай десек", "не десек", "ну осы",
]
_KK_PAUSES = ["мм", "ммм", "мммм", "хм", "хмм", "тс", "тсс", "шш", "шшш"]
_KK_NOISE = ["пф", "пфф", "бр", "брр", "фу", "фуу"]

_EN_FILLERS = [
    "um", "umm", "ummm", "uh", "uhh", "er", "err", "errr", "ah", "ahh",
    "oh", "ohh", "ohhh", "wow", "woah", "like", "you know", "i mean",
    "sort of", "kind of", "well", "so", "actually", "basically", "literally",
    "obviously", "you see", "you understand", "right",
]
_EN_PAUSES = ["mm", "mmm", "mmmm", "hm", "hmm", "shh", "shhh"]
_EN_NOISE = ["tsk", "pff", "pfff"]


def _lexicon(fillers: Iterable[str], pauses: Iterable[str], noise: Iterable[str]) -> Dict[str, WordClass]:
    entries = {w: WordClass.FILLER for w in fillers}
    entries.update({w: WordClass.PAUSE for w in pauses})
    entries.update({w: WordClass.NOISE for w in noise})
    return entries


FILLER_DICTIONARIES: Dict[str, Dict[str, WordClass]] = {
    "ru-RU": _lexicon(_RU_FILLERS, _RU_PAUSES, _RU_NOISE),
    "kk-KZ": _lexicon(_KK_FILLERS, _KK_PAUSES, _KK_NOISE),
    "en-US": _lexicon(_EN_FILLERS, _EN_PAUSES, _EN_NOISE),
}

_ALL_ENTRIES: Dict[str, WordClass] = {}
for _lang in ("en-US", "kk-KZ", "ru-RU"):
    _ALL_ENTRIES.update(FILLER_DICTIONARIES[_lang])

MAX_PHRASE_WORDS = 3

# -------- Spelling patterns --------
_VOWELS = "аэоуыиеёюяәөүұіaeiou"
ELONGATED_RE = re.compile(rf"^([{_VOWELS}]{{1,2}})\1+$")
DRAWN_OUT_RE = re.compile(rf"^[{_VOWELS}]{{1,2}}([мmh])\1+$")
REPEATED_CONSONANT_RE = re.compile(r"^([мнхтсшщmnhs])\1+$")
NOISE_RE = re.compile(r"^[пфтсшщбрpfshtbrk]{2,4}$")
# Real words that happen to match ELONGATED_RE
ELONGATION_EXCEPTIONS = frozenset({"ее"})

_STRIP_RE = re.compile(r"[^\w\s-]+")
_SENTENCE_END_RE = re.compile(r"[.!?…]+[\"'»)]*$")

SUBORDINATE_MARKERS = frozenset([
    "который", "которая", "которое", "которые", "что", "чтобы", "если", "когда", "потому",
    "оның", "оны", "үшін", "егер", "қашан", "себебі",
    "that", "which", "who", "when", "if", "because", "while",
])

# -------- Language profiles --------
LANGUAGE_PROFILES = {
    "ru-RU": {
        "patterns": [
            re.compile(r"[ёъыэ]"),
            re.compile(r"\b(?:что|как|где|когда|почему|который|этот|тот)\b"),
            re.compile(r"\w(?:ся|сь)\b"),
        ],
        "common": frozenset(["и", "в", "на", "с", "по", "для", "от", "до", "при", "что", "как", "где", "когда"]),
    },
    "kk-KZ": {
        "patterns": [
            re.compile(r"[әіңғүұқөһ]"),
            re.compile(r"\b(?:не|қалай|қайда|қашан|неге|қай|осы|сол)\b"),
            re.compile(r"\w(?:ды|ді|ты|ті|ған|ген|қан|кен)\b"),
        ],
        "common": frozenset(["және", "бен", "мен", "үшін", "дейін", "кейін", "не", "қалай", "қайда", "қашан"]),
    },
    "en-US": {
        "patterns": [
            re.compile(r"\b(?:the|and|or|but|in|on|at|to|for|of|with|by)\b"),
            re.compile(r"[a-z](?:ing|ed)\b"),
        ],
        "common": frozenset(["the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by"]),
    },
}

NLTK_STOPWORD_LANGUAGES = {"ru-RU": "russian", "kk-KZ": "kazakh", "en-US": "english"}


# -------- Helpers --------
def normalize_word(text: str) -> str:
    """Lowercase and strip punctuation, keeping inner hyphens ("н-ну")."""
    return _STRIP_RE.sub("", text.lower()).strip().strip("-_")


def resolve_language(tag: Optional[str]) -> Optional[str]:
    """Map a loose tag ("ru", "kk_KZ", "en-GB") onto a dictionary key."""
    if not tag:
        return None
    prefix = tag.replace("_", "-").split("-")[0].lower()
    for key in FILLER_DICTIONARIES:
        if key.split("-")[0].lower() == prefix:
            return key
    return None


def _lexicon_for(language: Optional[str]) -> Dict[str, WordClass]:
    if language is None:
        return _ALL_ENTRIES
    return FILLER_DICTIONARIES.get(language, _ALL_ENTRIES)


def classify(text: str, language: Optional[str] = None) -> WordClass:
    """Dictionary first, then drawn-out vowels, repeated consonants, noise."""
    word = normalize_word(text)
    if not word:
        return WordClass.WORD
    found = _lexicon_for(resolve_language(language) or language).get(word)
    if found is not None:
        return found
    if (ELONGATED_RE.match(word) and word not in ELONGATION_EXCEPTIONS) or DRAWN_OUT_RE.match(word):
        return WordClass.FILLER
    if REPEATED_CONSONANT_RE.match(word):
        return WordClass.PAUSE
    if NOISE_RE.match(word):
        return WordClass.NOISE
    return WordClass.WORD


def detect_language(text: str, default: str = "ru-RU") -> Tuple[str, float]:
    """Best-scoring language for a span of text and a [0, 1] confidence."""
    lowered = text.lower()
    tokens = [normalize_word(t) for t in lowered.split()]
    tokens = [t for t in tokens if t]
    if not tokens:
        return default, 0.0
    scores: Dict[str, int] = {}
    for language, profile in LANGUAGE_PROFILES.items():
        score = sum(len(p.findall(lowered)) * 2 for p in profile["patterns"])
        score += sum(3 for t in tokens if t in profile["common"])
        scores[language] = score
    best = max(scores, key=lambda k: scores[k])
    if scores[best] == 0:
        return default, 0.0
    return best, min(1.0, scores[best] / float(len(tokens)))


@lru_cache(maxsize=None)
def _stopwords(language: str) -> FrozenSet[str]:
    name = NLTK_STOPWORD_LANGUAGES.get(language)
    if name is None:
        return frozenset()
    try:
        return frozenset(stopwords.words(name))
    except LookupError:
        nltk.download("stopwords", quiet=True)
    try:
        return frozenset(stopwords.words(name))
    except LookupError:
        logger.warning("NLTK stopwords for %s unavailable; lexical density not filtered", name)
        return frozenset()


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


# -------- Analyzer --------
class TranscriptLexicalAnalyzer:
    def __init__(self, config: Optional[LexicalConfig] = None, stopword_filtering: bool = True) -> None:
        self.config = config or LexicalConfig()
        self.stopword_filtering = stopword_filtering

    def classify_words(self, words: Sequence[RawWord], dominant: Optional[str] = None) -> List[TranscriptWord]:
        """Rebuild every word with derived filler fields, matching phrases first."""
        texts = [normalize_word(w.text) for w in words]
        classes: List[WordClass] = []
        i = 0
        while i < len(words):
            language = resolve_language(words[i].language_tag) or dominant
            lexicon = _lexicon_for(language)
            matched = 0
            for n in range(min(MAX_PHRASE_WORDS, len(words) - i), 1, -1):
                phrase = " ".join(texts[i:i + n])
                if lexicon.get(phrase) is not None:
                    classes.extend([lexicon[phrase]] * n)
                    matched = n
                    break
            if matched:
                i += matched
                continue
            classes.append(classify(words[i].text, language))
            i += 1
        return [
            TranscriptWord(
                text=w.text,
                start_time=w.start_time,
                end_time=w.end_time,
                confidence=w.confidence,
                language_tag=w.language_tag,
                is_filler_word=cls == WordClass.FILLER,
                word_class=cls,
            )
            for w, cls in zip(words, classes)
        ]

    def analyze(self, words: Sequence[RawWord], total_duration_seconds: float) -> LexicalResult:
        duration = max(0.0, float(total_duration_seconds or 0.0))
        words = [w for w in words if normalize_word(w.text)]
        if not words:
            return LexicalResult(duration=duration)

        mixing = self.language_mixing(words)
        classified = self.classify_words(words, mixing.dominant_language)
        tokens = [normalize_word(w.text) for w in classified]

        vocabulary = self.vocabulary_stats(tokens, mixing.dominant_language)
        speaking_rate = len(tokens) / max(duration, 1.0) * 60.0
        fillers = self.filler_stats(classified, tokens, mixing.dominant_language)

        result = LexicalResult(
            words=classified,
            duration=duration,
            speaking_rate=speaking_rate,
            vocabulary=vocabulary,
            filler_words=fillers,
            pauses=self.pause_stats(classified),
            sentences=self.sentence_stats(classified),
            language_mixing=mixing,
            rate_variability=self.rate_variability(classified, duration),
        )
        logger.info(
            "Lexical analysis: %d words, %.0f wpm, filler ratio %.3f, dominant %s",
            len(tokens), speaking_rate, fillers.ratio, mixing.dominant_language,
        )
        return result

    def vocabulary_stats(self, tokens: List[str], language: str) -> VocabularyStats:
        total = len(tokens)
        unique = len(set(tokens))
        letters = [sum(ch.isalpha() for ch in t) for t in tokens]
        stop = _stopwords(language) if self.stopword_filtering else frozenset()
        content = [t for t in tokens if t not in stop]
        return VocabularyStats(
            total_words=total,
            unique_words=unique,
            richness=unique / total if total else 0.0,
            average_word_length=_mean(letters),
            complex_words=sum(1 for n in letters if n > 6),
            lexical_density=len(content) / total if total else 0.0,
        )

    def filler_stats(self, words: List[TranscriptWord], tokens: List[str], dominant: str) -> FillerWordStat:
        occurrences: Dict[str, List[float]] = defaultdict(list)
        per_language: Counter = Counter()
        pause_count = 0
        noise_count = 0
        i = 0
        while i < len(words):
            word = words[i]
            if word.word_class == WordClass.PAUSE:
                pause_count += 1
            elif word.word_class == WordClass.NOISE:
                noise_count += 1
            if word.word_class != WordClass.FILLER:
                i += 1
                continue
            # A dictionary phrase is one occurrence at its first word
            language = resolve_language(word.language_tag) or dominant
            lexicon = _lexicon_for(language)
            span = 1
            for n in range(min(MAX_PHRASE_WORDS, len(words) - i), 1, -1):
                phrase = " ".join(tokens[i:i + n])
                if lexicon.get(phrase) == WordClass.FILLER and all(
                    w.word_class == WordClass.FILLER for w in words[i:i + n]
                ):
                    span = n
                    break
            key = " ".join(tokens[i:i + span])
            occurrences[key].append(word.start_time)
            per_language[language] += 1
            i += span

        counts = [
            FillerWordCount(word=k, count=len(ts), timestamps=sorted(ts))
            for k, ts in occurrences.items()
        ]
        counts.sort(key=lambda c: (-c.count, c.word))
        total = sum(c.count for c in counts)
        return FillerWordStat(
            total_count=total,
            ratio=total / len(words) if words else 0.0,
            per_word_counts=counts,
            per_language_counts=dict(per_language),
            pause_count=pause_count,
            noise_count=noise_count,
        )

    def pause_stats(self, words: List[TranscriptWord]) -> PauseStats:
        cfg = self.config
        gaps = [
            nxt.start_time - cur.end_time
            for cur, nxt in zip(words, words[1:])
            if nxt.start_time - cur.end_time >= cfg.pause_min_seconds
        ]
        return PauseStats(
            total_pauses=len(gaps),
            average_pause_length=_mean(gaps),
            appropriate_pauses=sum(1 for g in gaps if g <= cfg.pause_appropriate_max_seconds),
            long_pauses=sum(1 for g in gaps if g > cfg.pause_long_seconds),
        )

    def split_sentences(self, words: List[TranscriptWord]) -> List[List[TranscriptWord]]:
        """Split on terminal punctuation, or on pauses when the text has none."""
        punctuated = any(_SENTENCE_END_RE.search(w.text) for w in words)
        sentences: List[List[TranscriptWord]] = []
        current: List[TranscriptWord] = []
        for i, word in enumerate(words):
            current.append(word)
            if punctuated:
                boundary = bool(_SENTENCE_END_RE.search(word.text))
            else:
                nxt = words[i + 1] if i + 1 < len(words) else None
                boundary = nxt is not None and nxt.start_time - word.end_time >= self.config.pause_min_seconds
            if boundary:
                sentences.append(current)
                current = []
        if current:
            sentences.append(current)
        return sentences

    def sentence_stats(self, words: List[TranscriptWord]) -> SentenceStats:
        sentences = self.split_sentences(words)
        if not sentences:
            return SentenceStats()
        complexity = []
        for sentence in sentences:
            tokens = [normalize_word(w.text) for w in sentence]
            commas = sum(w.text.count(",") for w in sentence)
            value = 0.0
            if len(sentence) > 10:
                value += 0.3
            if commas > 1:
                value += 0.3
            if any(t in SUBORDINATE_MARKERS for t in tokens):
                value += 0.4
            complexity.append(min(1.0, value))
        return SentenceStats(
            count=len(sentences),
            average_length=_mean([len(s) for s in sentences]),
            complexity=_mean(complexity),
        )

    def language_mixing(self, words: Sequence[RawWord]) -> LanguageMixing:
        size = max(1, self.config.segment_size)
        default = self.config.default_language
        segment_languages: List[str] = []
        for start in range(0, len(words), size):
            segment = words[start:start + size]
            tags = [resolve_language(w.language_tag) for w in segment]
            tags = [t for t in tags if t]
            if len(tags) == len(segment):
                language = Counter(tags).most_common(1)[0][0]
            else:
                language, _ = detect_language(" ".join(w.text for w in segment), default)
            segment_languages.append(language)

        if not segment_languages:
            return LanguageMixing(dominant_language=default)
        counts = Counter(segment_languages)
        dominant = counts.most_common(1)[0][0]
        distribution = {lang: n / len(segment_languages) for lang, n in counts.items()}
        switches = sum(1 for a, b in zip(segment_languages, segment_languages[1:]) if a != b)
        multilingual = any(
            share > self.config.multilingual_threshold
            for lang, share in distribution.items()
            if lang != dominant
        )
        return LanguageMixing(
            is_multilingual=multilingual,
            switch_points=switches,
            dominant_language=dominant,
            language_distribution=distribution,
        )

    def rate_variability(self, words: List[TranscriptWord], duration: float) -> float:
        """Coefficient of variation of word counts over fixed windows."""
        window = self.config.rate_window_seconds
        span = max(duration, max((w.end_time for w in words), default=0.0))
        n_windows = int(math.ceil(span / window)) if window > 0 else 0
        if n_windows < 2:
            return 0.0
        counts = [0] * n_windows
        for w in words:
            counts[min(n_windows - 1, int(w.start_time // window))] += 1
        mean = _mean(counts)
        if mean <= 0:
            return 0.0
        variance = _mean([(c - mean) ** 2 for c in counts])
        return math.sqrt(variance) / mean
