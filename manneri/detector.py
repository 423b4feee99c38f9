"""マンネリ検出器

会話ごとに1つ作成する。解析、介入判定、プロンプト生成、
介入履歴の管理、永続化、イベント通知をまとめて扱う。

should_intervene は判定だけを行い、介入の記録は
generate_diversification_prompt を呼んだ時点で行う。
"""

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from pydantic import ValidationError

from . import config as manneri_config
from .analyzer import ConversationAnalyzer, ConversationAnalyzerOptions
from .config import ConfigError, format_validation_errors, load_config, validate_config
from .events import (
    CleanupCompleted,
    CleanupError,
    ConfigUpdated,
    EventEmitter,
    EventType,
    InterventionTriggered,
    LoadError,
    LoadSuccess,
    PatternDetected,
    SaveError,
    SaveSuccess,
    SimilarityCalculated,
    StorageCleaned,
    TopicChanged,
)
from .models import (
    AnalysisResult,
    DiversificationPrompt,
    ManneriConfig,
    ManneriConfigUpdate,
    Message,
    StorageData,
    now_ms,
)
from .openrouter import query_model
from .prompts import PromptGenerator
from .storage import PersistenceProvider
from .text_utils import round_half_up

logger = logging.getLogger(__name__)

MAX_INTERVENTION_HISTORY = 100
DEFAULT_CLEANUP_MAX_AGE_MS = 7 * 24 * 60 * 60 * 1000

MessageLike = Union[Message, Mapping[str, Any]]

AI_PROMPT_INSTRUCTIONS = {
    "ja": (
        "あなたは会話のファシリテーターです。以下の会話は同じ話題や言い回しの繰り返しになっています。"
        "次の発言で自然に新しい話題へ移るための短い指示を1文だけ日本語で返してください。"
    ),
    "en": (
        "You are a conversation facilitator. The conversation below has become repetitive. "
        "Reply with a single short instruction, in English, that steers the next turn toward a fresh topic."
    ),
}


def _to_messages(messages: Sequence[MessageLike]) -> List[Message]:
    return [m if isinstance(m, Message) else Message.model_validate(m) for m in messages]


class ManneriDetector:
    """会話のマンネリ化を検出して話題転換を提案する"""

    def __init__(
        self,
        config: Union[ManneriConfig, Mapping[str, Any], None] = None,
        persistence_provider: Optional[PersistenceProvider] = None
    ):
        """
        Args:
            config: 設定（辞書の場合は既定値とマージして検証する）
            persistence_provider: 永続化プロバイダ（省略時は保存しない）

        Raises:
            ConfigError: 設定が不正な場合
        """
        self.config = load_config(config)
        self.persistence_provider = persistence_provider
        self.intervention_history: List[int] = []
        self.last_analysis_result: Optional[AnalysisResult] = None

        self.events = EventEmitter(verbose=self.config.debug_mode)
        self.analyzer = ConversationAnalyzer(self._create_analyzer_options())
        self.prompt_generator = self._create_prompt_generator()

        logger.info(
            f"ManneriDetector created (language={self.config.language}, "
            f"threshold={self.config.similarity_threshold}, "
            f"persistence={'on' if persistence_provider else 'off'})"
        )

    def _create_analyzer_options(self) -> ConversationAnalyzerOptions:
        return ConversationAnalyzerOptions(**self._analyzer_option_values())

    def _analyzer_option_values(self) -> Dict[str, Any]:
        return {
            "similarity_threshold": self.config.similarity_threshold,
            "analysis_window": self.config.lookback_window,
            "enable_keyword_analysis": self.config.enable_keyword_analysis,
            "enable_topic_tracking": self.config.enable_topic_tracking,
            "exclude_keywords": list(self.config.exclude_keywords),
            "language": self.config.language,
        }

    def _create_prompt_generator(self) -> PromptGenerator:
        return PromptGenerator(self.config.language, self.config.custom_prompts)

    @property
    def last_intervention(self) -> int:
        return self.intervention_history[-1] if self.intervention_history else 0

    # ---- 判定 ----

    def _analyze(self, messages: Sequence[MessageLike]) -> AnalysisResult:
        result = self.analyzer.analyze_conversation(_to_messages(messages))
        result.last_intervention = self.last_intervention
        self.last_analysis_result = result
        return result

    def detect_manneri(self, messages: Sequence[MessageLike]) -> bool:
        """
        会話がマンネリ化しているか判定（クールダウンは考慮しない）

        Args:
            messages: 会話履歴（Messageまたは辞書）

        Returns:
            介入すべき状態ならTrue
        """
        if len(messages) < 2:
            return False

        result = self._analyze(messages)

        self.events.emit(EventType.SIMILARITY_CALCULATED, SimilarityCalculated(
            score=result.similarity.score,
            threshold=self.config.similarity_threshold,
        ))
        if result.should_intervene:
            self.events.emit(EventType.PATTERN_DETECTED, PatternDetected(analysis=result))
        if result.topic_shift is not None and result.topic_shift.has_shift:
            self.events.emit(EventType.TOPIC_CHANGED, TopicChanged(
                old_topics=result.topic_shift.old_topics,
                new_topics=result.topic_shift.new_topics,
            ))

        return result.should_intervene

    def should_intervene(self, messages: Sequence[MessageLike]) -> bool:
        """マンネリ化していて、かつクールダウンが明けていればTrue（介入は記録しない）"""
        if not self.detect_manneri(messages):
            return False

        elapsed = now_ms() - self.last_intervention
        if elapsed < self.config.intervention_cooldown:
            logger.debug(
                f"Intervention skipped due to cooldown "
                f"({self.config.intervention_cooldown - elapsed}ms remaining)"
            )
            return False
        return True

    def analyze_conversation(self, messages: Sequence[MessageLike]) -> AnalysisResult:
        """イベントを発行せずに解析だけ行う"""
        return self._analyze(messages)

    # ---- 介入 ----

    def generate_diversification_prompt(self, messages: Sequence[MessageLike]) -> DiversificationPrompt:
        """
        話題転換プロンプトを生成し、介入として記録する

        クールダウンは再確認しない。
        """
        prompt = self.prompt_generator.generate_diversification_prompt(
            messages,
            analysis=self.last_analysis_result,
            language=self.config.language,
        )
        self._commit_intervention(prompt)
        return prompt

    async def generate_ai_diversification_prompt(self, messages: Sequence[MessageLike]) -> DiversificationPrompt:
        """
        LLMで話題転換プロンプトを生成（失敗時はテンプレートを使う）

        enable_ai_prompt_generation が無効、またはAPIキーがない場合も
        テンプレートから生成する。
        """
        if not self.config.enable_ai_prompt_generation or not manneri_config.OPENROUTER_API_KEY:
            return self.generate_diversification_prompt(messages)

        model = self.config.ai_prompt_generation_model or manneri_config.DEFAULT_AI_PROMPT_MODEL
        recent = _to_messages(messages)[-self.config.lookback_window:] if self.config.lookback_window else []
        instruction = AI_PROMPT_INSTRUCTIONS.get(self.config.language, AI_PROMPT_INSTRUCTIONS["en"])

        response = await query_model(
            model,
            [{"role": m.role, "content": m.content} for m in recent],
            system_prompt=instruction,
        )
        content = (response or {}).get("content")
        if not content or not content.strip():
            logger.warning(f"AI prompt generation failed with {model}, falling back to templates")
            return self.generate_diversification_prompt(messages)

        prompt_type, priority = PromptGenerator.classify(self.last_analysis_result)
        prompt = DiversificationPrompt(
            content=content.strip(),
            type=prompt_type,
            priority=priority,
            context=f"Conversation length: {len(messages)} messages",
        )
        self._commit_intervention(prompt)
        return prompt

    def _commit_intervention(self, prompt: DiversificationPrompt):
        self.intervention_history.append(now_ms())
        if len(self.intervention_history) > MAX_INTERVENTION_HISTORY:
            self.intervention_history = self.intervention_history[-MAX_INTERVENTION_HISTORY:]

        logger.info(f"Intervention committed ({prompt.type.value}, priority={prompt.priority.value})")
        self.events.emit(EventType.INTERVENTION_TRIGGERED, InterventionTriggered(prompt=prompt))

    # ---- 設定 ----

    def update_config(self, changes: Union[ManneriConfigUpdate, Mapping[str, Any]]):
        """
        設定を部分的に更新

        language か custom_prompts が変わるとプロンプト生成器を作り直し、
        パターンストアもリセットする。

        Raises:
            ConfigError: 更新内容が不正な場合
        """
        if isinstance(changes, ManneriConfigUpdate):
            update = changes
        elif isinstance(changes, Mapping):
            try:
                update = ManneriConfigUpdate.model_validate(dict(changes))
            except ValidationError as e:
                raise ConfigError(format_validation_errors(e)) from e
        else:
            raise ConfigError([f"config: expected a mapping, got {type(changes).__name__}"])

        values = update.changes()
        result = validate_config({**self.config.model_dump(), **values})
        if not result.valid:
            raise ConfigError(result.errors)

        self.config = result.config
        self.events.verbose = self.config.debug_mode

        if "language" in values or "custom_prompts" in values:
            self.prompt_generator = self._create_prompt_generator()
            self.analyzer.reset_pattern_detector()
        self.analyzer.update_options(**self._analyzer_option_values())

        logger.debug(f"Config updated: {sorted(values)}")
        self.events.emit(EventType.CONFIG_UPDATED, ConfigUpdated(changes=values))

    def get_config(self) -> ManneriConfig:
        return self.config.model_copy(deep=True)

    # ---- 統計・履歴 ----

    def get_statistics(self) -> Dict[str, Any]:
        history = self.intervention_history
        average_interval = 0
        if len(history) > 1:
            intervals = [b - a for a, b in zip(history, history[1:])]
            average_interval = round_half_up(sum(intervals) / len(intervals))

        return {
            "total_interventions": len(history),
            "average_intervention_interval": average_interval,
            "last_intervention": history[-1] if history else None,
            "configured_thresholds": {
                "similarity": self.config.similarity_threshold,
                "repetition": self.config.repetition_limit,
                "cooldown": self.config.intervention_cooldown,
            },
            "analysis_stats": self.analyzer.get_analysis_stats(),
        }

    def clear_history(self):
        self.intervention_history = []
        self.last_analysis_result = None
        self.analyzer.clear_cache()
        self.prompt_generator.clear_history()
        logger.debug("Detector history cleared")

    # ---- イベント ----

    def on(self, event: str, handler: Callable[[Any], None]):
        self.events.on(event, handler)

    def off(self, event: str, handler: Callable[[Any], None]):
        self.events.off(event, handler)

    # ---- 永続化 ----

    def export_data(self) -> StorageData:
        patterns = self.last_analysis_result.patterns if self.last_analysis_result else []
        return StorageData(
            patterns=list(patterns),
            interventions=list(self.intervention_history),
            settings=self.config.model_dump(mode="json"),
        )

    def import_data(self, data: Union[StorageData, Mapping[str, Any]]):
        """
        エクスポートしたデータを復元

        介入履歴を置き換え、設定は update_config で反映する（未知のキーは無視）。
        """
        if not isinstance(data, StorageData):
            data = StorageData.model_validate(dict(data))

        self.intervention_history = list(data.interventions)[-MAX_INTERVENTION_HISTORY:]

        if data.settings:
            known = set(ManneriConfigUpdate.model_fields)
            unknown = sorted(set(data.settings) - known)
            if unknown:
                logger.warning(f"Ignoring unknown settings on import: {unknown}")
            self.update_config({k: v for k, v in data.settings.items() if k in known})

    def save(self) -> bool:
        if self.persistence_provider is None:
            logger.warning("ManneriDetector: no persistence provider configured")
            return False

        try:
            saved = self.persistence_provider.save(self.export_data())
        except Exception as e:
            logger.error(f"Failed to save manneri data: {e}")
            self.events.emit(EventType.SAVE_ERROR, SaveError(error=e))
            return False

        if saved:
            logger.info("Manneri data saved")
            self.events.emit(EventType.SAVE_SUCCESS, SaveSuccess(timestamp=now_ms()))
        return saved

    def load(self) -> bool:
        if self.persistence_provider is None:
            logger.warning("ManneriDetector: no persistence provider configured")
            return False

        try:
            data = self.persistence_provider.load()
            if data is None:
                return False
            self.import_data(data)
        except Exception as e:
            logger.error(f"Failed to load manneri data: {e}")
            self.events.emit(EventType.LOAD_ERROR, LoadError(error=e))
            return False

        logger.info(f"Manneri data loaded ({len(data.interventions)} interventions)")
        self.events.emit(EventType.LOAD_SUCCESS, LoadSuccess(data=data, timestamp=now_ms()))
        return True

    def cleanup(self, max_age: int = DEFAULT_CLEANUP_MAX_AGE_MS) -> int:
        """
        max_age（ミリ秒）より古い介入記録と保存データを削除

        Returns:
            削除した件数（メモリ上 + プロバイダ）
        """
        cutoff = now_ms() - max_age
        original = len(self.intervention_history)
        self.intervention_history = [t for t in self.intervention_history if t > cutoff]
        removed = original - len(self.intervention_history)

        if removed:
            self.events.emit(EventType.STORAGE_CLEANED, StorageCleaned(removed_items=removed))

        try:
            provider_removed = self.persistence_provider.cleanup(max_age) if self.persistence_provider else 0
        except Exception as e:
            logger.error(f"Failed to clean up manneri data: {e}")
            self.events.emit(EventType.CLEANUP_ERROR, CleanupError(error=e))
            return removed

        total = removed + provider_removed
        if total > 0:
            self.events.emit(EventType.CLEANUP_COMPLETED, CleanupCompleted(
                removed_items=total,
                timestamp=now_ms(),
            ))
        return total

    def has_persistence_provider(self) -> bool:
        return self.persistence_provider is not None

    def get_persistence_info(self) -> Optional[Dict[str, Any]]:
        if self.persistence_provider is None:
            return None
        return self.persistence_provider.get_storage_info()


