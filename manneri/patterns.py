"""会話パターンの検出

メッセージ列から繰り返しを3種類の方法で探す。
- 内容シグネチャ（ロール + 先頭3語）の並びの繰り返し
- ほぼ同じ内容のメッセージの組
- ロールの並びだけの構造的な繰り返し

検出したパターンはストアに保持し、24時間経過したものと
上限（100件）を超えた古いものから削除する。
"""

import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .models import ConversationPattern, Message, Severity, now_ms
from .text_utils import calculate_text_similarity, round_half_up

logger = logging.getLogger(__name__)

MAX_PATTERNS = 100
MIN_PATTERN_LENGTH = 2
MAX_PATTERN_LENGTH = 5
MAX_ROLE_SEQUENCE_LENGTH = 4
PATTERN_MAX_AGE_MS = 24 * 60 * 60 * 1000
REPEATED_MESSAGE_THRESHOLD = 0.8
MIN_ROLE_SEQUENCE_REPEATS = 3


@dataclass
class PatternDetectionResult:
    """パターン検出の結果"""
    patterns: List[ConversationPattern] = field(default_factory=list)
    severity: Severity = Severity.LOW
    confidence: float = 0.0


@dataclass
class MessageSequence:
    """シグネチャごとの出現状況"""
    messages: List[Message]
    pattern: str
    frequency: int = 1
    positions: List[int] = field(default_factory=list)


def _pattern_id() -> str:
    return f"pat_{uuid.uuid4().hex[:12]}"


def create_pattern_signature(messages: Sequence[Message]) -> str:
    """各メッセージを「ロール:先頭3語」にしてパイプで連結"""
    return "|".join(
        f"{m.role}:{' '.join(m.content.split()[:3])}" for m in messages
    )


class PatternDetector:
    """繰り返しパターンの検出とストア管理"""

    def __init__(
        self,
        max_patterns: int = MAX_PATTERNS,
        similarity_fn: Optional[Callable[[str, str], float]] = None
    ):
        self.max_patterns = max_patterns
        self.similarity_fn = similarity_fn or calculate_text_similarity
        self.detected_patterns: "OrderedDict[str, ConversationPattern]" = OrderedDict()

    @property
    def pattern_count(self) -> int:
        return len(self.detected_patterns)

    def detect_patterns(self, messages: Sequence[Message]) -> PatternDetectionResult:
        """
        メッセージ列からパターンを検出

        Args:
            messages: 解析対象のメッセージ

        Returns:
            重複除去・頻度順のパターンと重大度・確信度
        """
        self._cleanup_old_patterns()

        all_patterns = (
            self._find_sequence_patterns(messages)
            + self._find_repeated_messages(messages)
            + self._find_structural_patterns(messages)
        )
        patterns = self.deduplicate_patterns(all_patterns)

        result = PatternDetectionResult(
            patterns=patterns,
            severity=self.calculate_severity(patterns),
            confidence=self.calculate_confidence(patterns, len(messages)),
        )
        logger.debug(
            f"Detected {len(patterns)} patterns (severity={result.severity.value}, "
            f"store={self.pattern_count})"
        )
        return result

    # ---- 検出 ----

    def _find_sequence_patterns(self, messages: Sequence[Message]) -> List[ConversationPattern]:
        patterns = []
        for length in range(MIN_PATTERN_LENGTH, MAX_PATTERN_LENGTH + 1):
            patterns.extend(self._extract_sequence_patterns(messages, length))
        return patterns

    def _extract_sequence_patterns(
        self,
        messages: Sequence[Message],
        sequence_length: int
    ) -> List[ConversationPattern]:
        sequences: Dict[str, MessageSequence] = {}
        for i in range(len(messages) - sequence_length + 1):
            window = list(messages[i:i + sequence_length])
            signature = create_pattern_signature(window)
            if signature in sequences:
                sequences[signature].frequency += 1
                sequences[signature].positions.append(i)
            else:
                sequences[signature] = MessageSequence(window, signature, 1, [i])

        now = now_ms()
        patterns = []
        for signature, sequence in sequences.items():
            if sequence.frequency < 2:
                continue
            pattern = ConversationPattern(
                id=_pattern_id(),
                pattern=signature,
                frequency=sequence.frequency,
                first_seen=sequence.messages[0].timestamp or now,
                last_seen=sequence.messages[-1].timestamp or now,
                messages=sequence.messages,
            )
            patterns.append(pattern)
            self._store_pattern(pattern)
        return patterns

    def _find_repeated_messages(self, messages: Sequence[Message]) -> List[ConversationPattern]:
        now = now_ms()
        patterns = []
        found_pairs = set()

        for i, current in enumerate(messages[:-1]):
            for j in range(i + 1, len(messages)):
                other = messages[j]
                if current.role != other.role:
                    continue
                if (i, j) in found_pairs:
                    continue
                if self.similarity_fn(current.content, other.content) < REPEATED_MESSAGE_THRESHOLD:
                    continue

                found_pairs.add((i, j))
                pattern = ConversationPattern(
                    id=_pattern_id(),
                    pattern=f"Repeated {current.role} message",
                    frequency=2,
                    first_seen=current.timestamp or now,
                    last_seen=other.timestamp or now,
                    messages=[current, other],
                )
                patterns.append(pattern)
                self._store_pattern(pattern)
        return patterns

    def _find_structural_patterns(self, messages: Sequence[Message]) -> List[ConversationPattern]:
        """ロールの並びだけを見た繰り返し（ストアには保存しない）"""
        sequences: Dict[str, MessageSequence] = {}
        for length in range(2, min(MAX_ROLE_SEQUENCE_LENGTH, len(messages)) + 1):
            for i in range(len(messages) - length + 1):
                window = list(messages[i:i + length])
                signature = "-".join(m.role for m in window)
                if signature in sequences:
                    sequences[signature].frequency += 1
                    sequences[signature].positions.append(i)
                else:
                    sequences[signature] = MessageSequence(window, signature, 1, [i])

        now = now_ms()
        return [
            ConversationPattern(
                id=_pattern_id(),
                pattern=f"Role sequence: {sequence.pattern}",
                frequency=sequence.frequency,
                first_seen=now,
                last_seen=now,
                messages=sequence.messages,
            )
            for sequence in sequences.values()
            if sequence.frequency >= MIN_ROLE_SEQUENCE_REPEATS
        ]

    # ---- 集計 ----

    @staticmethod
    def deduplicate_patterns(patterns: Sequence[ConversationPattern]) -> List[ConversationPattern]:
        """(シグネチャ, 頻度) で重複を除き、頻度の高い順に並べる"""
        unique: Dict[tuple, ConversationPattern] = {}
        for pattern in patterns:
            key = (pattern.pattern, pattern.frequency)
            existing = unique.get(key)
            if existing is None or existing.frequency < pattern.frequency:
                unique[key] = pattern
        return sorted(unique.values(), key=lambda p: p.frequency, reverse=True)

    @staticmethod
    def calculate_severity(patterns: Sequence[ConversationPattern]) -> Severity:
        if not patterns:
            return Severity.LOW
        max_frequency = max(p.frequency for p in patterns)
        if max_frequency >= 5 or len(patterns) >= 10:
            return Severity.HIGH
        if max_frequency >= 3 or len(patterns) >= 5:
            return Severity.MEDIUM
        return Severity.LOW

    @staticmethod
    def calculate_confidence(patterns: Sequence[ConversationPattern], total_messages: int) -> float:
        if not patterns or total_messages == 0:
            return 0.0
        covered = sum(len(p.messages) * p.frequency for p in patterns)
        return round_half_up(min(covered / total_messages, 1.0), 2)

    def get_pattern_statistics(self) -> Dict:
        patterns = list(self.detected_patterns.values())
        if not patterns:
            return {
                "total_patterns": 0,
                "average_frequency": 0,
                "most_frequent_pattern": None,
                "oldest_pattern": None,
            }

        return {
            "total_patterns": len(patterns),
            "average_frequency": round_half_up(sum(p.frequency for p in patterns) / len(patterns), 2),
            "most_frequent_pattern": max(patterns, key=lambda p: p.frequency),
            "oldest_pattern": min(patterns, key=lambda p: p.first_seen),
        }

    # ---- ストア管理 ----

    def _evict_oldest(self):
        oldest = min(self.detected_patterns.values(), key=lambda p: p.last_seen)
        del self.detected_patterns[oldest.id]

    def _store_pattern(self, pattern: ConversationPattern):
        while self.detected_patterns and len(self.detected_patterns) >= self.max_patterns:
            self._evict_oldest()
        self.detected_patterns[pattern.id] = pattern

    def _cleanup_old_patterns(self):
        now = now_ms()
        expired = [
            pattern_id for pattern_id, pattern in self.detected_patterns.items()
            if now - pattern.last_seen > PATTERN_MAX_AGE_MS
        ]
        for pattern_id in expired:
            del self.detected_patterns[pattern_id]

        while self.detected_patterns and len(self.detected_patterns) >= self.max_patterns:
            self._evict_oldest()

        if expired:
            logger.debug(f"Removed {len(expired)} expired patterns")

    def clear_patterns(self):
        self.detected_patterns.clear()
