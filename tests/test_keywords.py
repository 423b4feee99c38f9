"""キーワード・話題解析の単体テスト"""

import pytest

from manneri.keywords import (
    DAY_MS,
    HOUR_MS,
    KeywordExtractor,
    cluster_score,
    keyword_score,
)
from manneri.models import Message, TopicCategory, now_ms


def user(content, timestamp=None):
    return Message(role="user", content=content, timestamp=timestamp)


class TestScores:
    """スコア計算"""

    def test_keyword_score_fresh(self):
        """直近に出たキーワードは新しさの分だけスコアが上がる"""
        now = now_ms()
        # 頻度2 × 新しさ(1+1) × 持続(1+0)
        assert keyword_score(2, now, now, now) == 4.0

    def test_keyword_score_stale(self):
        """24時間以上前のキーワードは頻度のみ"""
        now = now_ms()
        old = now - 2 * DAY_MS
        assert keyword_score(1, old, old, now) == 1.0

    def test_keyword_score_persistence_capped(self):
        """持続ボーナスは最大2倍"""
        now = now_ms()
        assert keyword_score(1, now - 3 * DAY_MS, now, now) == 4.0

    def test_cluster_score(self):
        """時間幅1時間以上でスコアが2倍"""
        assert cluster_score(2, 3, 0) == 6.0
        assert cluster_score(2, 3, 2 * HOUR_MS) == 12.0


class TestKeywordExtractor:
    """キーワード抽出"""

    @pytest.fixture(autouse=True)
    def setup(self):
        self.extractor = KeywordExtractor()

    def test_exclude_keywords(self):
        """除外キーワードは大文字小文字を区別せず除かれる"""
        extractor = KeywordExtractor(exclude_keywords=["Python"])
        assert extractor.extract_keywords_from_message(user("python python code")) == ["code"]

    def test_extract_keywords_from_messages(self):
        """複数メッセージでの出現回数順"""
        messages = [user("python code"), user("python test"), user("java code python")]
        keywords = self.extractor.extract_keywords_from_messages(messages)
        assert keywords[:2] == ["python", "code"]

    def test_keyword_frequencies(self):
        """出現回数と文脈（最大5件）"""
        now = now_ms()
        messages = [user(f"python example number{i}", now) for i in range(7)]
        frequencies = self.extractor.analyze_keyword_frequencies(messages)

        python = next(f for f in frequencies if f.keyword == "python")
        assert python.frequency == 7
        assert len(python.contexts) == 5
        assert frequencies[0].keyword in ("python", "example")

    def test_keyword_contexts_truncated(self):
        """文脈は先頭100文字まで"""
        long_text = "python " + "x" * 200
        frequencies = self.extractor.analyze_keyword_frequencies([user(long_text)])
        assert all(len(c) <= 100 for f in frequencies for c in f.contexts)

    def test_topic_shift_detected(self):
        """キーワードが重ならなければ話題が変わったとみなす"""
        recent = [user("cooking pasta recipe"), user("pasta sauce tomato")]
        historical = [user("python code review"), user("python test suite")]
        shift = self.extractor.detect_topic_shift(recent, historical)

        assert shift.has_shift
        assert shift.similarity == 0.0
        assert "pasta" in shift.new_topics
        assert "python" in shift.old_topics

    def test_no_topic_shift_when_both_empty(self):
        """両方空なら変化なし"""
        shift = self.extractor.detect_topic_shift([], [])
        assert not shift.has_shift
        assert shift.similarity == 1.0

    def test_categorize(self):
        """カテゴリ分類"""
        assert self.extractor.categorize_keywords(["Python"]) == TopicCategory.TECHNICAL
        assert self.extractor.categorize_keywords(["天気"]) == TopicCategory.DAILY_LIFE
        assert self.extractor.categorize_keywords(["music"]) == TopicCategory.ENTERTAINMENT
        assert self.extractor.categorize_keywords(["xyzzy"]) == TopicCategory.OTHER

    def test_topic_clusters(self):
        """同じキーワードのクラスタ"""
        now = now_ms()
        messages = [user("python rocks", now), user("python rules", now), user("python wins", now)]
        clusters = self.extractor.analyze_topic_clusters(messages)

        top = clusters[0]
        assert top.keywords == ["python"]
        assert top.message_count == 3
        assert top.score == 3.0

    def test_topic_info_confidence(self):
        """スコア10以上で確信度1.0"""
        now = now_ms()
        messages = [user("python rocks", now)] * 12
        topics = self.extractor.get_topic_info(messages)

        assert topics[0].keywords == ["python"]
        assert topics[0].confidence == 1.0
        assert topics[0].category == TopicCategory.TECHNICAL

    def test_keyword_density(self):
        assert KeywordExtractor.keyword_density([0, 1, 2], 5) == 0.6
        assert KeywordExtractor.keyword_density([0, 10], 5) == 0.2
        assert KeywordExtractor.keyword_density([3], 5) == 0.0

    def test_find_repeated_keywords(self):
        """ウィンドウ内で密集しているキーワード"""
        messages = [user("python code"), user("python test"), user("python run")]
        repeated = self.extractor.find_repeated_keywords(messages)

        assert [r.keyword for r in repeated] == ["python"]
        assert repeated[0].positions == [0, 1, 2]
        assert repeated[0].density == 0.6
