"""キーワード抽出と話題解析

メッセージからキーワードを取り出し、出現頻度・新しさでスコア付けする。
関連キーワードをまとめた話題クラスタと、話題の変化も扱う。
"""

import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence

from .models import (
    DEFAULT_TEXT_OPTIONS,
    KeywordFrequency,
    Message,
    RepeatedKeyword,
    TextAnalysisOptions,
    TopicCategory,
    TopicCluster,
    TopicInfo,
    TopicShift,
    now_ms,
)
from .text_utils import extract_keywords, jaccard_similarity, tokenize

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS

MAX_KEYWORDS = 50
MAX_CONTEXTS = 5
MAX_CONTEXT_LENGTH = 100
MAX_CLUSTERS = 10
MAX_RELATED_KEYWORDS = 4
RELATED_KEYWORD_THRESHOLD = 0.3

# カテゴリ判定用のキーワード（部分一致）
CATEGORY_KEYWORDS = {
    TopicCategory.TECHNICAL: [
        "技術", "プログラミング", "コード", "システム", "api", "データベース", "サーバー",
        "programming", "code", "software", "database", "server", "python",
    ],
    TopicCategory.ENTERTAINMENT: [
        "ゲーム", "音楽", "映画", "アニメ", "tv", "スポーツ",
        "game", "music", "movie", "anime", "sports",
    ],
    TopicCategory.DAILY_LIFE: [
        "食事", "天気", "仕事", "家族", "友達", "学校",
        "food", "weather", "work", "family", "friend", "school",
    ],
}


def keyword_score(frequency: int, first_seen: int, last_seen: int, now: Optional[int] = None) -> float:
    """頻度 × 新しさ（24時間で0まで減衰）× 持続時間（24時間で上限）"""
    now = now_ms() if now is None else now
    recency = max(0.0, 1 - (now - last_seen) / DAY_MS)
    persistence_hours = (last_seen - first_seen) / HOUR_MS
    return frequency * (1 + recency) * (1 + min(1.0, persistence_hours / 24))


def cluster_score(keyword_count: int, message_count: int, time_span_ms: int) -> float:
    return keyword_count * message_count * (1 + min(1.0, time_span_ms / HOUR_MS))


class KeywordExtractor:
    """キーワードと話題の解析"""

    def __init__(
        self,
        options: TextAnalysisOptions = DEFAULT_TEXT_OPTIONS,
        exclude_keywords: Iterable[str] = ()
    ):
        self.options = options
        self.exclude_keywords = {k.lower() for k in exclude_keywords}

    def extract_keywords_from_message(self, message: Message) -> List[str]:
        keywords = extract_keywords(message.content, self.options)
        if self.exclude_keywords:
            keywords = [k for k in keywords if k.lower() not in self.exclude_keywords]
        return keywords

    def extract_keywords_from_messages(self, messages: Sequence[Message]) -> List[str]:
        """複数メッセージを通して多く出るキーワード上位20件"""
        counts = Counter()
        for message in messages:
            counts.update(self.extract_keywords_from_message(message))
        return [keyword for keyword, _ in counts.most_common(20)]

    def analyze_keyword_frequencies(self, messages: Sequence[Message]) -> List[KeywordFrequency]:
        """
        キーワードごとの頻度・スコア・文脈を集計

        Args:
            messages: 対象メッセージ

        Returns:
            スコア上位50件
        """
        now = now_ms()
        data: Dict[str, KeywordFrequency] = {}

        for message in messages:
            timestamp = message.timestamp or now
            context = message.content[:MAX_CONTEXT_LENGTH]

            for keyword in self.extract_keywords_from_message(message):
                entry = data.get(keyword)
                if entry is None:
                    data[keyword] = KeywordFrequency(
                        keyword=keyword,
                        frequency=1,
                        score=keyword_score(1, timestamp, timestamp, now),
                        first_seen=timestamp,
                        last_seen=timestamp,
                        contexts=[context],
                    )
                    continue

                entry.frequency += 1
                entry.first_seen = min(entry.first_seen, timestamp)
                entry.last_seen = max(entry.last_seen, timestamp)
                entry.score = keyword_score(entry.frequency, entry.first_seen, entry.last_seen, now)
                if len(entry.contexts) < MAX_CONTEXTS and context not in entry.contexts:
                    entry.contexts.append(context)

        ranked = sorted(data.values(), key=lambda k: k.score, reverse=True)
        return ranked[:MAX_KEYWORDS]

    def detect_topic_shift(
        self,
        recent_messages: Sequence[Message],
        historical_messages: Sequence[Message],
        threshold: float = 0.5
    ) -> TopicShift:
        """最近と過去のキーワード集合のJaccardが閾値未満なら話題が変わったとみなす"""
        recent = self.extract_keywords_from_messages(recent_messages)
        historical = self.extract_keywords_from_messages(historical_messages)
        recent_set, historical_set = set(recent), set(historical)

        similarity = jaccard_similarity(recent_set, historical_set)
        return TopicShift(
            has_shift=similarity < threshold,
            similarity=similarity,
            new_topics=[k for k in recent if k not in historical_set],
            old_topics=[k for k in historical if k not in recent_set],
        )

    def _token_overlap(self, word1: str, word2: str) -> float:
        tokens1 = tokenize(word1, self.options)
        tokens2 = tokenize(word2, self.options)
        if not tokens1 or not tokens2:
            return 0.0
        return jaccard_similarity(tokens1, tokens2)

    def _find_related_keywords(self, keyword: str, frequencies: List[KeywordFrequency]) -> List[str]:
        related = [keyword]
        for freq in frequencies:
            if len(related) > MAX_RELATED_KEYWORDS:
                break
            if freq.keyword == keyword or freq.frequency <= 1:
                continue
            if self._token_overlap(keyword, freq.keyword) > RELATED_KEYWORD_THRESHOLD:
                related.append(freq.keyword)
        return related

    def analyze_topic_clusters(self, messages: Sequence[Message]) -> List[TopicCluster]:
        """キーワードと関連キーワードをクラスタにまとめ、スコア上位10件を返す"""
        frequencies = self.analyze_keyword_frequencies(messages)
        clusters: Dict[str, TopicCluster] = {}
        now = now_ms()

        for message in messages:
            timestamp = message.timestamp or now
            for keyword in self.extract_keywords_from_message(message):
                related = sorted(self._find_related_keywords(keyword, frequencies))
                cluster_id = "|".join(related)

                cluster = clusters.get(cluster_id)
                if cluster is None:
                    cluster = TopicCluster(
                        id=cluster_id,
                        keywords=related,
                        message_count=0,
                        first_message=timestamp,
                        last_message=timestamp,
                    )
                    clusters[cluster_id] = cluster

                cluster.message_count += 1
                cluster.first_message = min(cluster.first_message, timestamp)
                cluster.last_message = max(cluster.last_message, timestamp)
                cluster.score = cluster_score(
                    len(cluster.keywords),
                    cluster.message_count,
                    cluster.last_message - cluster.first_message,
                )

        ranked = sorted(clusters.values(), key=lambda c: c.score, reverse=True)
        return ranked[:MAX_CLUSTERS]

    def categorize_keywords(self, keywords: Sequence[str]) -> TopicCategory:
        for category, category_keywords in CATEGORY_KEYWORDS.items():
            for keyword in keywords:
                k = keyword.lower()
                if any(ck in k or k in ck for ck in category_keywords):
                    return category
        return TopicCategory.OTHER

    def get_topic_info(self, messages: Sequence[Message]) -> List[TopicInfo]:
        return [
            TopicInfo(
                keywords=cluster.keywords,
                score=cluster.score,
                category=self.categorize_keywords(cluster.keywords),
                confidence=min(cluster.score / 10, 1.0),
            )
            for cluster in self.analyze_topic_clusters(messages)
        ]

    @staticmethod
    def keyword_density(positions: Sequence[int], window_size: int) -> float:
        """window_size件の区間に含まれる出現数の最大値 / window_size"""
        if len(positions) < 2 or window_size <= 0:
            return 0.0

        max_density = 0.0
        for i, start in enumerate(positions[:-1]):
            count = 1
            for position in positions[i + 1:]:
                if position - start >= window_size:
                    break
                count += 1
            max_density = max(max_density, count / window_size)
        return max_density

    def find_repeated_keywords(
        self,
        messages: Sequence[Message],
        min_repetitions: int = 3,
        window_size: int = 5
    ) -> List[RepeatedKeyword]:
        positions: Dict[str, List[int]] = {}
        for index, message in enumerate(messages):
            for keyword in self.extract_keywords_from_message(message):
                positions.setdefault(keyword, []).append(index)

        repeated = []
        for keyword, keyword_positions in positions.items():
            if len(keyword_positions) < min_repetitions:
                continue
            density = self.keyword_density(keyword_positions, window_size)
            if density > 0.5:
                repeated.append(RepeatedKeyword(
                    keyword=keyword,
                    positions=keyword_positions,
                    density=density,
                ))

        repeated.sort(key=lambda r: r.density, reverse=True)
        return repeated
