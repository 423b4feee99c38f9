"""ManneriDetector の単体テスト"""

import asyncio

import pytest

from manneri import config, detector as detector_module
from manneri.config import ConfigError
from manneri.detector import ManneriDetector
from manneri.events import (
    CleanupCompleted,
    ConfigUpdated,
    InterventionTriggered,
    PatternDetected,
    SaveError,
    SimilarityCalculated,
    StorageCleaned,
    TopicChanged,
)
from manneri.models import ManneriConfig, ManneriConfigUpdate, Message, PromptType, now_ms
from manneri.prompts import DEFAULT_PROMPTS
from manneri.storage import LocalFilePersistenceProvider, PersistenceProvider

DAY_MS = 24 * 60 * 60 * 1000


def repeated_conversation(repeats=3):
    messages = []
    for _ in range(repeats):
        messages.append(Message(role="user", content="Hello, how are you today?"))
        messages.append(Message(role="assistant", content="I am doing well, thank you for asking."))
    return messages


DISSIMILAR = [
    Message(role="user", content="Hello, how are you?"),
    Message(role="assistant", content="What is the weather like?"),
]

TOPIC_SHIFT = [
    Message(role="user", content="python database server code tips"),
    Message(role="assistant", content="python database server code tips"),
    Message(role="user", content="anime music movie favorite soundtrack"),
    Message(role="assistant", content="anime music movie favorite soundtrack"),
]


class FailingProvider(PersistenceProvider):
    """常に例外を投げるプロバイダ"""

    def save(self, data):
        raise OSError("disk full")

    def load(self):
        raise OSError("disk gone")

    def clear(self):
        raise OSError("disk gone")

    def cleanup(self, max_age_ms):
        raise OSError("disk gone")

    def is_available(self):
        return True

    def get_storage_info(self):
        return {"provider": "failing"}


@pytest.fixture(autouse=True)
def isolate_env(monkeypatch):
    """環境変数・APIキーの影響を受けないようにする"""
    monkeypatch.setattr(config, "MANNERI_LANGUAGE", None)
    monkeypatch.setattr(config, "MANNERI_DEBUG", False)
    monkeypatch.setattr(config, "OPENROUTER_API_KEY", None)


@pytest.fixture
def events():
    """発行されたイベントを記録する"""
    return []


def listen(detector, event, events):
    detector.on(event, lambda payload: events.append((event, payload)))


class TestDetection:
    """検出と介入判定"""

    def test_fewer_than_two_messages(self):
        """2件未満では判定しない"""
        detector = ManneriDetector()
        assert not detector.detect_manneri([])
        assert not detector.detect_manneri(DISSIMILAR[:1])

    def test_repeated_conversation_detected(self):
        """繰り返しの会話はマンネリと判定"""
        detector = ManneriDetector()
        assert detector.detect_manneri(repeated_conversation())
        assert "パターンの繰り返し" in detector.last_analysis_result.intervention_reason

    def test_dissimilar_not_detected(self):
        """無関係な2件はマンネリではない"""
        assert not ManneriDetector().detect_manneri(DISSIMILAR)

    def test_accepts_dict_messages(self):
        """辞書形式のメッセージも受け付ける"""
        messages = [m.model_dump() for m in repeated_conversation()]
        assert ManneriDetector().detect_manneri(messages)

    def test_none_content_rejected(self):
        """content が None ならエラー"""
        with pytest.raises(ValueError):
            ManneriDetector().detect_manneri([
                {"role": "user", "content": None},
                {"role": "assistant", "content": "hi"},
            ])

    def test_detection_events(self, events):
        """類似度は毎回、パターン検出は介入時のみ通知"""
        detector = ManneriDetector()
        listen(detector, "similarity_calculated", events)
        listen(detector, "pattern_detected", events)

        detector.detect_manneri(DISSIMILAR)
        assert [e for e, _ in events] == ["similarity_calculated"]
        assert isinstance(events[0][1], SimilarityCalculated)
        assert events[0][1].threshold == 0.75

        events.clear()
        detector.detect_manneri(repeated_conversation())
        assert [e for e, _ in events] == ["similarity_calculated", "pattern_detected"]
        assert isinstance(events[1][1], PatternDetected)
        assert events[1][1].analysis.should_intervene

    def test_listener_error_does_not_break_detection(self):
        """リスナーの例外で判定は止まらない"""
        detector = ManneriDetector()

        def broken(payload):
            raise RuntimeError("listener failure")

        detector.on("similarity_calculated", broken)
        assert detector.detect_manneri(repeated_conversation())

    def test_off(self, events):
        """解除したリスナーには通知されない"""
        detector = ManneriDetector()
        handler = events.append
        detector.on("similarity_calculated", handler)
        detector.off("similarity_calculated", handler)
        detector.detect_manneri(DISSIMILAR)
        assert events == []

    def test_topic_changed_event(self, events):
        """前半と後半でキーワードが入れ替わると topic_changed を通知"""
        detector = ManneriDetector()
        listen(detector, "topic_changed", events)

        detector.detect_manneri(TOPIC_SHIFT)
        assert len(events) == 1
        payload = events[0][1]
        assert isinstance(payload, TopicChanged)
        assert "python" in payload.old_topics
        assert "anime" in payload.new_topics
        assert "python" not in payload.new_topics

    def test_no_topic_changed_below_four_messages(self, events):
        """4件未満では話題の変化を通知しない"""
        detector = ManneriDetector()
        listen(detector, "topic_changed", events)

        detector.detect_manneri(TOPIC_SHIFT[:3])
        assert events == []

    def test_no_topic_changed_for_same_topic(self, events):
        """同じ話題の繰り返しでは通知しない"""
        detector = ManneriDetector()
        listen(detector, "topic_changed", events)

        detector.detect_manneri(repeated_conversation(repeats=2))
        assert events == []

    def test_analyze_conversation_emits_nothing(self, events):
        """解析のみではイベントを発行しない"""
        detector = ManneriDetector()
        listen(detector, "similarity_calculated", events)

        result = detector.analyze_conversation(repeated_conversation())
        assert result.should_intervene
        assert events == []
        assert detector.last_analysis_result is result


class TestIntervention:
    """介入とクールダウン"""

    def test_should_intervene_does_not_commit(self):
        """介入判定は介入を記録しない"""
        detector = ManneriDetector()
        assert detector.should_intervene(repeated_conversation())
        assert detector.should_intervene(repeated_conversation())
        assert detector.get_statistics()["total_interventions"] == 0

    def test_cooldown_blocks_reintervention(self):
        """クールダウン中は再介入しない"""
        detector = ManneriDetector({"intervention_cooldown": 1000})
        messages = repeated_conversation()

        assert detector.should_intervene(messages)
        detector.generate_diversification_prompt(messages)
        assert not detector.should_intervene(messages)
        # 判定自体はマンネリのまま
        assert detector.detect_manneri(messages)

    def test_cooldown_elapsed(self, monkeypatch):
        """クールダウンが明ければ再び介入できる"""
        detector = ManneriDetector({"intervention_cooldown": 1000})
        messages = repeated_conversation()
        detector.generate_diversification_prompt(messages)

        later = now_ms() + 1000
        monkeypatch.setattr(detector_module, "now_ms", lambda: later)
        assert detector.should_intervene(messages)

    def test_generate_prompt_commits(self, events):
        """プロンプト生成で介入が記録される"""
        detector = ManneriDetector()
        listen(detector, "intervention_triggered", events)
        messages = repeated_conversation()

        detector.detect_manneri(messages)
        prompt = detector.generate_diversification_prompt(messages)

        assert prompt.content in DEFAULT_PROMPTS["ja"].intervention
        assert prompt.type == PromptType.PATTERN_BREAK
        assert prompt.context == "Conversation length: 6 messages"
        assert detector.get_statistics()["total_interventions"] == 1
        assert isinstance(events[0][1], InterventionTriggered)
        assert events[0][1].prompt == prompt

    def test_last_intervention_in_analysis(self):
        """解析結果に最終介入時刻が入る"""
        detector = ManneriDetector()
        messages = repeated_conversation()
        detector.generate_diversification_prompt(messages)

        result = detector.analyze_conversation(messages)
        assert result.last_intervention == detector.intervention_history[-1]

    def test_history_capped(self):
        """介入履歴は100件まで"""
        detector = ManneriDetector()
        for _ in range(105):
            detector.generate_diversification_prompt(DISSIMILAR)
        assert len(detector.intervention_history) == 100

    def test_statistics(self):
        """統計情報の内容"""
        detector = ManneriDetector({"similarity_threshold": 0.8})
        stats = detector.get_statistics()
        assert stats["total_interventions"] == 0
        assert stats["average_intervention_interval"] == 0
        assert stats["last_intervention"] is None
        assert stats["configured_thresholds"] == {
            "similarity": 0.8,
            "repetition": 3,
            "cooldown": 300000,
        }
        assert "cache_hit_rate" in stats["analysis_stats"]

    def test_average_interval(self):
        """介入間隔の平均"""
        detector = ManneriDetector()
        detector.intervention_history = [1000, 3000, 7000]
        assert detector.get_statistics()["average_intervention_interval"] == 3000

    def test_clear_history(self):
        """履歴と直近の解析結果を消去"""
        detector = ManneriDetector()
        detector.generate_diversification_prompt(repeated_conversation())
        detector.clear_history()
        assert detector.intervention_history == []
        assert detector.last_analysis_result is None


class TestAIPrompt:
    """AIによるプロンプト生成"""

    def test_disabled_uses_templates(self):
        """AI生成が無効ならテンプレートを使う"""
        detector = ManneriDetector()
        prompt = asyncio.run(detector.generate_ai_diversification_prompt(DISSIMILAR))
        assert prompt.content in DEFAULT_PROMPTS["ja"].intervention
        assert len(detector.intervention_history) == 1

    def test_uses_model_response(self, monkeypatch):
        """モデルの応答をプロンプトにする"""
        calls = []

        async def fake_query(model, messages, system_prompt=None, timeout=30.0):
            calls.append((model, messages, system_prompt))
            return {"content": "  旅行の話をしてみましょう。 "}

        monkeypatch.setattr(config, "OPENROUTER_API_KEY", "test-key")
        monkeypatch.setattr(detector_module, "query_model", fake_query)
        detector = ManneriDetector({
            "enable_ai_prompt_generation": True,
            "ai_prompt_generation_model": "openai/gpt-4o-mini",
        })

        prompt = asyncio.run(detector.generate_ai_diversification_prompt(repeated_conversation()))

        assert prompt.content == "旅行の話をしてみましょう。"
        assert calls[0][0] == "openai/gpt-4o-mini"
        assert len(calls[0][1]) == 6
        assert calls[0][2]
        assert len(detector.intervention_history) == 1

    def test_falls_back_on_failure(self, monkeypatch):
        """応答がなければテンプレートにフォールバック"""
        async def failing_query(model, messages, system_prompt=None, timeout=30.0):
            return None

        monkeypatch.setattr(config, "OPENROUTER_API_KEY", "test-key")
        monkeypatch.setattr(detector_module, "query_model", failing_query)
        detector = ManneriDetector({"enable_ai_prompt_generation": True, "language": "en"})

        prompt = asyncio.run(detector.generate_ai_diversification_prompt(DISSIMILAR))
        assert prompt.content in DEFAULT_PROMPTS["en"].intervention
        assert len(detector.intervention_history) == 1


class TestConfig:
    """設定"""

    def test_invalid_constructor_config(self):
        """不正な設定では作成できない"""
        with pytest.raises(ConfigError):
            ManneriDetector({"intervention_cooldown": -1})

    def test_accepts_config_model(self):
        """設定モデルを直接渡せる"""
        detector = ManneriDetector(ManneriConfig(language="en"))
        assert detector.get_config().language == "en"

    def test_get_config_is_copy(self):
        """取得した設定はコピー"""
        detector = ManneriDetector()
        copy = detector.get_config()
        copy.exclude_keywords.append("extra")
        assert "extra" not in detector.get_config().exclude_keywords

    def test_update_config(self, events):
        """設定更新が解析器に反映され通知される"""
        detector = ManneriDetector()
        listen(detector, "config_updated", events)

        detector.update_config({"similarity_threshold": 0.9})
        assert detector.get_config().similarity_threshold == 0.9
        assert detector.analyzer.get_options().similarity_threshold == 0.9
        assert isinstance(events[0][1], ConfigUpdated)
        assert events[0][1].changes == {"similarity_threshold": 0.9}

    def test_update_config_model(self):
        """部分更新モデルでも更新できる"""
        detector = ManneriDetector()
        detector.update_config(ManneriConfigUpdate(lookback_window=4))
        assert detector.analyzer.get_options().analysis_window == 4

    def test_language_change_rebuilds_generator(self):
        """言語変更でプロンプト生成器とパターンストアを作り直す"""
        detector = ManneriDetector()
        detector.detect_manneri(repeated_conversation())
        assert detector.analyzer.pattern_detector.pattern_count > 0

        detector.update_config({"language": "en"})
        assert detector.prompt_generator.language == "en"
        assert detector.analyzer.pattern_detector.pattern_count == 0
        prompt = detector.generate_diversification_prompt(DISSIMILAR)
        assert prompt.content in DEFAULT_PROMPTS["en"].intervention

    def test_custom_prompts(self):
        """カスタムプロンプトへの切り替え"""
        detector = ManneriDetector()
        detector.update_config({"custom_prompts": {"ja": {"intervention": ["別の話をしよう"]}}})
        assert detector.generate_diversification_prompt(DISSIMILAR).content == "別の話をしよう"

    @pytest.mark.parametrize("changes", [
        {"similarity_threshold": 2.0},
        {"intervention_cooldown": -5},
        {"no_such_field": 1},
    ])
    def test_invalid_update(self, changes):
        """不正な更新は反映されない"""
        detector = ManneriDetector()
        with pytest.raises(ConfigError):
            detector.update_config(changes)
        assert detector.get_config().similarity_threshold == 0.75

    def test_debug_mode_toggles_event_logging(self):
        detector = ManneriDetector()
        detector.update_config({"debug_mode": True})
        assert detector.events.verbose


class TestPersistence:
    """エクスポートと永続化"""

    def test_export_import_roundtrip(self):
        """エクスポートしたデータを別の検出器に取り込む"""
        source = ManneriDetector({"intervention_cooldown": 0, "similarity_threshold": 0.8})
        messages = repeated_conversation()
        source.detect_manneri(messages)
        source.generate_diversification_prompt(messages)
        source.generate_diversification_prompt(messages)

        data = source.export_data()
        assert data.patterns
        assert data.settings["similarity_threshold"] == 0.8

        target = ManneriDetector()
        target.import_data(data)
        assert target.get_statistics()["total_interventions"] == 2
        assert target.get_config().similarity_threshold == 0.8

    def test_import_ignores_unknown_settings(self):
        """未知の設定キーは無視される"""
        detector = ManneriDetector()
        detector.import_data({"interventions": [1, 2], "settings": {"legacyField": True, "language": "en"}})
        assert detector.intervention_history == [1, 2]
        assert detector.get_config().language == "en"

    def test_save_and_load(self, tmp_path, events):
        """ローカルファイルへの保存と復元"""
        provider = LocalFilePersistenceProvider("detector_test", base_dir=str(tmp_path))
        source = ManneriDetector(persistence_provider=provider)
        listen(source, "save_success", events)
        source.generate_diversification_prompt(DISSIMILAR)

        assert source.save()
        assert events[0][0] == "save_success"

        target = ManneriDetector(persistence_provider=provider)
        listen(target, "load_success", events)
        assert target.load()
        assert len(target.intervention_history) == 1
        assert events[-1][0] == "load_success"

    def test_load_without_data(self, tmp_path):
        """保存データがなければ False"""
        provider = LocalFilePersistenceProvider("empty", base_dir=str(tmp_path))
        assert not ManneriDetector(persistence_provider=provider).load()

    def test_no_provider(self):
        """プロバイダなしでは保存も復元もしない"""
        detector = ManneriDetector()
        assert not detector.has_persistence_provider()
        assert detector.get_persistence_info() is None
        assert detector.save() is False
        assert detector.load() is False

    def test_provider_errors_become_events(self, events):
        """プロバイダの例外はエラーイベントになる"""
        detector = ManneriDetector(persistence_provider=FailingProvider())
        for event in ("save_error", "load_error", "cleanup_error"):
            listen(detector, event, events)

        assert detector.save() is False
        assert detector.load() is False
        assert detector.cleanup() == 0

        assert [e for e, _ in events] == ["save_error", "load_error", "cleanup_error"]
        assert isinstance(events[0][1], SaveError)
        assert isinstance(events[0][1].error, OSError)

    def test_cleanup_prunes_memory(self, events):
        """古い介入記録を削除して通知"""
        detector = ManneriDetector()
        listen(detector, "storage_cleaned", events)
        listen(detector, "cleanup_completed", events)
        now = now_ms()
        detector.intervention_history = [now - 10 * DAY_MS, now]

        assert detector.cleanup() == 1
        assert detector.intervention_history == [now]
        assert isinstance(events[0][1], StorageCleaned)
        assert isinstance(events[1][1], CleanupCompleted)
        assert events[1][1].removed_items == 1

    def test_cleanup_nothing_to_remove(self, events):
        """削除対象がなければ通知しない"""
        detector = ManneriDetector()
        listen(detector, "cleanup_completed", events)
        assert detector.cleanup() == 0
        assert events == []

    def test_persistence_info(self, tmp_path):
        """プロバイダの保存先情報"""
        provider = LocalFilePersistenceProvider("info", base_dir=str(tmp_path))
        detector = ManneriDetector(persistence_provider=provider)
        assert detector.has_persistence_provider()
        assert detector.get_persistence_info()["key"] == "info"
