"""メッセージ間の類似度解析

同じテキストの組を何度も比較するため、順序なしペアをキーにした
キャッシュを持つ。期限切れは参照時に判定して削除する。
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from .models import (
    DEFAULT_TEXT_OPTIONS,
    Message,
    SimilarityResult,
    TextAnalysisOptions,
    now_ms,
)
from .text_utils import (
    calculate_text_similarity,
    generate_ngrams,
    jaccard_similarity,
    tokenize,
)

logger = logging.getLogger(__name__)

CACHE_TTL_MS = 5 * 60 * 1000
CACHE_MAX_ENTRIES = 1000
CACHE_EVICT_BATCH = 100


class SimilarityCache:
    """テキストペア → 類似度のキャッシュ（TTL付き、件数上限あり）"""

    def __init__(
        self,
        ttl_ms: int = CACHE_TTL_MS,
        max_entries: int = CACHE_MAX_ENTRIES,
        evict_batch: int = CACHE_EVICT_BATCH
    ):
        self.ttl_ms = ttl_ms
        self.max_entries = max_entries
        self.evict_batch = evict_batch
        # 挿入順 = 古い順
        self._entries: Dict[Tuple[str, str], Tuple[float, int]] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(text1: str, text2: str) -> Tuple[str, str]:
        return (text1, text2) if text1 <= text2 else (text2, text1)

    def get(self, text1: str, text2: str) -> Optional[float]:
        key = self.make_key(text1, text2)
        entry = self._entries.get(key)
        if entry is not None:
            value, stored_at = entry
            if now_ms() - stored_at < self.ttl_ms:
                self.hits += 1
                return value
            del self._entries[key]
        self.misses += 1
        return None

    def set(self, text1: str, text2: str, value: float):
        key = self.make_key(text1, text2)
        self._entries.pop(key, None)
        self._entries[key] = (value, now_ms())

        if len(self._entries) > self.max_entries:
            for old_key in list(self._entries)[:self.evict_batch]:
                del self._entries[old_key]
            logger.debug(f"Similarity cache overflow, evicted {self.evict_batch} entries")

    def clear(self):
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class SimilarityAnalyzer:
    """メッセージ同士の類似度を計算する"""

    def __init__(self, options: TextAnalysisOptions = DEFAULT_TEXT_OPTIONS):
        self.options = options
        self.cache = SimilarityCache()

    def calculate_similarity(self, text1: str, text2: str) -> float:
        cached = self.cache.get(text1, text2)
        if cached is not None:
            return cached

        similarity = calculate_text_similarity(text1, text2, self.options)
        self.cache.set(text1, text2, similarity)
        return similarity

    def analyze_similarity(
        self,
        current_message: Message,
        previous_messages: Sequence[Message],
        threshold: float = 0.7
    ) -> SimilarityResult:
        """
        最新メッセージと過去メッセージ（同じロールのみ）を比較

        Args:
            current_message: 判定対象のメッセージ
            previous_messages: 比較対象の履歴
            threshold: 繰り返しとみなす類似度

        Returns:
            最大類似度と閾値以上のメッセージ
        """
        if not previous_messages:
            return SimilarityResult()

        current_content = current_message.content.strip()
        if not current_content:
            return SimilarityResult()

        max_similarity = 0.0
        matched: List[Message] = []

        for message in previous_messages:
            # ロールが違うメッセージ同士は比較しない
            if message.role != current_message.role:
                continue
            similarity = self.calculate_similarity(current_content, message.content)
            max_similarity = max(max_similarity, similarity)
            if similarity >= threshold:
                matched.append(message)

        return SimilarityResult(
            score=max_similarity,
            is_repeated=max_similarity >= threshold,
            matched_messages=matched,
        )

    def find_similar_messages(
        self,
        target_message: Message,
        messages: Sequence[Message],
        threshold: float = 0.7,
        same_role_only: bool = True
    ) -> List[Message]:
        target_content = target_message.content.strip()
        similar = []
        for message in messages:
            if message is target_message:
                continue
            if same_role_only and message.role != target_message.role:
                continue
            if self.calculate_similarity(target_content, message.content) >= threshold:
                similar.append(message)
        return similar

    def sequence_similarity(
        self,
        sequence1: Sequence[Message],
        sequence2: Sequence[Message]
    ) -> float:
        """位置を揃えて比較した平均類似度（ロール不一致の位置は除外）"""
        if len(sequence1) != len(sequence2):
            return 0.0

        total = 0.0
        valid_pairs = 0
        for first, second in zip(sequence1, sequence2):
            if first.role == second.role:
                total += self.calculate_similarity(first.content, second.content)
                valid_pairs += 1

        return total / valid_pairs if valid_pairs else 0.0

    def analyze_sequence_similarity(
        self,
        messages: Sequence[Message],
        sequence_length: int = 3,
        threshold: float = 0.7
    ) -> List[Dict]:
        """重ならない2つのk件区間の組をすべて比較し、似ている区間を返す"""
        if sequence_length <= 0 or len(messages) < sequence_length * 2:
            return []

        sequences = []
        last_start = len(messages) - sequence_length
        for i in range(last_start + 1):
            sequence1 = list(messages[i:i + sequence_length])
            for j in range(i + sequence_length, last_start + 1):
                sequence2 = messages[j:j + sequence_length]
                similarity = self.sequence_similarity(sequence1, sequence2)
                if similarity >= threshold:
                    sequences.append({"sequence": sequence1, "similarity": similarity})

        sequences.sort(key=lambda s: s["similarity"], reverse=True)
        return sequences

    def analyze_ngram_similarity(self, text1: str, text2: str, ngram_size: int = 2) -> float:
        """n-gram集合のJaccard類似度"""
        tokens1 = tokenize(text1, self.options)
        tokens2 = tokenize(text2, self.options)

        if not tokens1 and not tokens2:
            return 1.0
        if not tokens1 or not tokens2:
            return 0.0

        ngrams1 = set(generate_ngrams(tokens1, ngram_size))
        ngrams2 = set(generate_ngrams(tokens2, ngram_size))

        if not ngrams1 and not ngrams2:
            return 1.0
        if not ngrams1 or not ngrams2:
            return 0.0
        return jaccard_similarity(ngrams1, ngrams2)

    def clear_cache(self):
        self.cache.clear()

    def get_cache_stats(self) -> Dict[str, float]:
        return {
            "size": len(self.cache),
            "hit_rate": round(self.cache.hit_rate, 4),
        }
