"""会話全体の解析

類似度・話題・パターンの3つの解析を直近のウィンドウに対して行い、
介入すべきかどうかと、その理由を返す。
"""

import logging
import time
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Sequence

from .analysis_logger import AnalysisLogger
from .keywords import KeywordExtractor
from .models import (
    DEFAULT_TEXT_OPTIONS,
    AnalysisResult,
    ConversationPattern,
    Message,
    SimilarityResult,
    TextAnalysisOptions,
    TopicInfo,
)
from .patterns import PatternDetector
from .similarity import SimilarityAnalyzer
from .text_utils import round_half_up

logger = logging.getLogger(__name__)

PATTERN_TRIGGER_FREQUENCY = 3
TOPIC_TRIGGER_CONFIDENCE = 0.8
LOOP_SIMILARITY_THRESHOLD = 0.8

# 介入理由の文言
REASON_TEMPLATES = {
    "ja": {
        "similarity": "類似度が高い ({percent}%)",
        "pattern": "パターンの繰り返し (最大{frequency}回)",
        "topic": "話題の偏り ({count}件)",
        "fallback": "閾値を超過",
    },
    "en": {
        "similarity": "High similarity ({percent}%)",
        "pattern": "Repeated pattern (up to {frequency} times)",
        "topic": "Topic concentration ({count} topics)",
        "fallback": "Threshold exceeded",
    },
}


@dataclass
class ConversationAnalyzerOptions:
    """会話解析のオプション"""
    similarity_threshold: float = 0.75
    analysis_window: int = 10
    enable_similarity_analysis: bool = True
    enable_pattern_detection: bool = True
    enable_keyword_analysis: bool = True
    enable_topic_tracking: bool = True
    text_analysis_options: TextAnalysisOptions = DEFAULT_TEXT_OPTIONS
    exclude_keywords: List[str] = field(default_factory=list)
    language: str = "ja"


class ConversationAnalyzer:
    """類似度・話題・パターンを組み合わせて介入を判定する"""

    def __init__(self, options: ConversationAnalyzerOptions = None):
        self.options = options or ConversationAnalyzerOptions()
        self.analysis_logger = AnalysisLogger()
        self._build_analyzers()
        self.pattern_detector = PatternDetector(
            similarity_fn=self.similarity_analyzer.calculate_similarity
        )

    def _build_analyzers(self):
        self.similarity_analyzer = SimilarityAnalyzer(self.options.text_analysis_options)
        self.keyword_extractor = KeywordExtractor(
            self.options.text_analysis_options,
            exclude_keywords=self.options.exclude_keywords,
        )

    def analyze_conversation(self, messages: Sequence[Message]) -> AnalysisResult:
        """
        直近のメッセージを解析して介入の要否を判定

        Args:
            messages: 会話履歴（古い順）

        Returns:
            AnalysisResult（last_interventionは呼び出し側で設定する）
        """
        start = time.perf_counter()
        window = self._get_analysis_window(messages)

        similarity = SimilarityResult()
        if self.options.enable_similarity_analysis:
            similarity = self._analyze_similarity(window)

        topics: List[TopicInfo] = []
        topic_shift = None
        if self.options.enable_topic_tracking and window:
            topics = self.keyword_extractor.get_topic_info(window)
            if len(window) >= 4:
                half = len(window) // 2
                topic_shift = self.keyword_extractor.detect_topic_shift(window[half:], window[:half])

        patterns: List[ConversationPattern] = []
        if self.options.enable_pattern_detection and len(window) >= 3:
            patterns = self.pattern_detector.detect_patterns(window).patterns

        repeated_keywords = []
        if self.options.enable_keyword_analysis and window:
            repeated_keywords = self.keyword_extractor.find_repeated_keywords(window)

        triggers = self._evaluate_triggers(similarity, topics, patterns)
        result = AnalysisResult(
            similarity=similarity,
            topics=topics,
            patterns=patterns,
            should_intervene=any(triggers.values()),
            intervention_reason=self._build_reason(triggers, similarity, topics, patterns),
            repeated_keywords=repeated_keywords,
            topic_shift=topic_shift,
        )

        self.analysis_logger.log_call(
            "analyze_conversation",
            len(window),
            (time.perf_counter() - start) * 1000,
            should_intervene=result.should_intervene,
            pattern_count=len(patterns),
        )
        return result

    def _get_analysis_window(self, messages: Sequence[Message]) -> List[Message]:
        window_size = min(self.options.analysis_window, len(messages))
        if window_size <= 0:
            return []
        return list(messages[-window_size:])

    def _analyze_similarity(self, messages: List[Message]) -> SimilarityResult:
        if len(messages) < 2:
            return SimilarityResult()
        return self.similarity_analyzer.analyze_similarity(
            messages[-1],
            messages[:-1],
            self.options.similarity_threshold,
        )

    def _evaluate_triggers(
        self,
        similarity: SimilarityResult,
        topics: List[TopicInfo],
        patterns: List[ConversationPattern]
    ) -> Dict[str, bool]:
        return {
            "similarity": similarity.is_repeated and similarity.score >= self.options.similarity_threshold,
            "pattern": any(p.frequency >= PATTERN_TRIGGER_FREQUENCY for p in patterns),
            "topic": any(t.confidence > TOPIC_TRIGGER_CONFIDENCE for t in topics),
        }

    def _build_reason(
        self,
        triggers: Dict[str, bool],
        similarity: SimilarityResult,
        topics: List[TopicInfo],
        patterns: List[ConversationPattern]
    ) -> str:
        templates = REASON_TEMPLATES.get(self.options.language, REASON_TEMPLATES["ja"])
        reasons = []

        if triggers["similarity"]:
            reasons.append(templates["similarity"].format(percent=round_half_up(similarity.score * 100)))
        if triggers["pattern"]:
            max_frequency = max(p.frequency for p in patterns)
            reasons.append(templates["pattern"].format(frequency=max_frequency))
        if triggers["topic"]:
            count = sum(1 for t in topics if t.confidence > TOPIC_TRIGGER_CONFIDENCE)
            reasons.append(templates["topic"].format(count=count))

        return ", ".join(reasons) if reasons else templates["fallback"]

    # ---- 補助的な解析 ----

    def analyze_message_flow(self, messages: Sequence[Message]) -> Dict[str, Any]:
        """平均文字数、ロール分布、発言間隔、エンゲージメントスコア"""
        if not messages:
            return {
                "avg_message_length": 0,
                "role_distribution": {},
                "conversation_rhythm": [],
                "engagement_score": 0,
            }

        avg_length = sum(len(m.content) for m in messages) / len(messages)

        role_distribution: Dict[str, int] = {}
        for message in messages:
            role_distribution[message.role] = role_distribution.get(message.role, 0) + 1

        rhythm = [
            current.timestamp - previous.timestamp
            for previous, current in zip(messages, messages[1:])
            if previous.timestamp and current.timestamp
        ]

        unique_words = set()
        for message in messages:
            unique_words.update(word.lower() for word in message.content.split())
        vocabulary_diversity = len(unique_words) / len(messages)
        length_score = min(avg_length / 100, 1.0)

        return {
            "avg_message_length": round_half_up(avg_length),
            "role_distribution": role_distribution,
            "conversation_rhythm": rhythm,
            "engagement_score": round_half_up((vocabulary_diversity + length_score) * 50),
        }

    def detect_conversation_loops(self, messages: Sequence[Message]) -> Dict[str, Any]:
        """
        隣り合う同じ長さの区間が似ている箇所（ループ）を探す

        短いループ、前方の位置から順に調べ、最初に見つかったものを返す。
        """
        start = time.perf_counter()
        result = {
            "has_loop": False,
            "loop_length": 0,
            "loop_start": -1,
            "confidence": 0.0,
        }

        if len(messages) >= 4:
            result = self._find_first_loop(messages) or result

        self.analysis_logger.log_call(
            "detect_conversation_loops",
            len(messages),
            (time.perf_counter() - start) * 1000,
        )
        return result

    def _find_first_loop(self, messages: Sequence[Message]):
        for loop_length in range(2, len(messages) // 2 + 1):
            for loop_start in range(len(messages) - loop_length * 2 + 1):
                first = messages[loop_start:loop_start + loop_length]
                second = messages[loop_start + loop_length:loop_start + loop_length * 2]
                similarity = self.similarity_analyzer.sequence_similarity(first, second)
                if similarity > LOOP_SIMILARITY_THRESHOLD:
                    return {
                        "has_loop": True,
                        "loop_length": loop_length,
                        "loop_start": loop_start,
                        "confidence": similarity,
                    }
        return None

    # ---- 状態管理 ----

    def get_analysis_stats(self) -> Dict[str, Any]:
        """解析回数・平均処理時間・キャッシュ状況と、解析の種類ごとの集計"""
        cache_stats = self.similarity_analyzer.get_cache_stats()
        summary = self.analysis_logger.get_summary()
        return {
            "total_analyses": self.analysis_logger.total_calls,
            "average_analysis_time": round(self.analysis_logger.average_duration_ms, 3),
            "cache_hit_rate": cache_stats["hit_rate"],
            "memory_usage": cache_stats["size"],
            "interventions_suggested": summary["interventions_suggested"],
            "by_operation": summary["by_operation"],
        }

    def clear_cache(self):
        self.similarity_analyzer.clear_cache()
        self.pattern_detector.clear_patterns()

    def reset_pattern_detector(self):
        self.pattern_detector.clear_patterns()
        logger.debug("Pattern store reset")

    def update_options(self, **changes):
        """
        オプションを部分的に更新

        テキスト解析オプションか除外キーワードが変わった場合は
        類似度・キーワードの解析器を作り直す（キャッシュも破棄される）。
        """
        unknown = set(changes) - {f.name for f in fields(self.options)}
        if unknown:
            raise ValueError(f"Unknown analyzer options: {sorted(unknown)}")

        rebuild = (
            ("text_analysis_options" in changes
             and changes["text_analysis_options"] != self.options.text_analysis_options)
            or ("exclude_keywords" in changes
                and list(changes["exclude_keywords"]) != self.options.exclude_keywords)
        )

        if "exclude_keywords" in changes:
            changes["exclude_keywords"] = list(changes["exclude_keywords"])
        self.options = replace(self.options, **changes)

        if rebuild:
            self._build_analyzers()
            self.pattern_detector.similarity_fn = self.similarity_analyzer.calculate_similarity

    def get_options(self) -> ConversationAnalyzerOptions:
        return replace(self.options, exclude_keywords=list(self.options.exclude_keywords))
