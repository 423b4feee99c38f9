"""検出器が発行するイベント

イベントの種類は固定で、種類ごとにペイロードの型が決まっている。
リスナーの例外はログに記録し、他のリスナーや呼び出し元の処理は止めない。
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List

from .models import AnalysisResult, DiversificationPrompt, StorageData

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    SIMILARITY_CALCULATED = "similarity_calculated"
    PATTERN_DETECTED = "pattern_detected"
    INTERVENTION_TRIGGERED = "intervention_triggered"
    TOPIC_CHANGED = "topic_changed"
    CONFIG_UPDATED = "config_updated"
    STORAGE_CLEANED = "storage_cleaned"
    SAVE_SUCCESS = "save_success"
    SAVE_ERROR = "save_error"
    LOAD_SUCCESS = "load_success"
    LOAD_ERROR = "load_error"
    CLEANUP_COMPLETED = "cleanup_completed"
    CLEANUP_ERROR = "cleanup_error"


@dataclass
class SimilarityCalculated:
    score: float
    threshold: float


@dataclass
class PatternDetected:
    analysis: AnalysisResult


@dataclass
class InterventionTriggered:
    prompt: DiversificationPrompt


@dataclass
class TopicChanged:
    old_topics: List[str] = field(default_factory=list)
    new_topics: List[str] = field(default_factory=list)


@dataclass
class ConfigUpdated:
    changes: Dict[str, Any]


@dataclass
class StorageCleaned:
    removed_items: int


@dataclass
class SaveSuccess:
    timestamp: int


@dataclass
class SaveError:
    error: Exception


@dataclass
class LoadSuccess:
    data: StorageData
    timestamp: int


@dataclass
class LoadError:
    error: Exception


@dataclass
class CleanupCompleted:
    removed_items: int
    timestamp: int


@dataclass
class CleanupError:
    error: Exception


EVENT_PAYLOADS = {
    EventType.SIMILARITY_CALCULATED: SimilarityCalculated,
    EventType.PATTERN_DETECTED: PatternDetected,
    EventType.INTERVENTION_TRIGGERED: InterventionTriggered,
    EventType.TOPIC_CHANGED: TopicChanged,
    EventType.CONFIG_UPDATED: ConfigUpdated,
    EventType.STORAGE_CLEANED: StorageCleaned,
    EventType.SAVE_SUCCESS: SaveSuccess,
    EventType.SAVE_ERROR: SaveError,
    EventType.LOAD_SUCCESS: LoadSuccess,
    EventType.LOAD_ERROR: LoadError,
    EventType.CLEANUP_COMPLETED: CleanupCompleted,
    EventType.CLEANUP_ERROR: CleanupError,
}

EventHandler = Callable[[Any], None]


class EventEmitter:
    """種類ごとのリスナーを管理して通知する"""

    def __init__(self, verbose: bool = False):
        # Trueならイベントをinfoで記録（デバッグモード）
        self.verbose = verbose
        self._listeners: Dict[EventType, List[EventHandler]] = {
            event_type: [] for event_type in EventType
        }

    def on(self, event: str, handler: EventHandler):
        self._listeners[EventType(event)].append(handler)

    def off(self, event: str, handler: EventHandler):
        listeners = self._listeners[EventType(event)]
        if handler in listeners:
            listeners.remove(handler)

    def listener_count(self, event: str) -> int:
        return len(self._listeners[EventType(event)])

    def emit(self, event: str, payload: Any):
        """
        リスナーに通知

        Args:
            event: イベントの種類
            payload: 種類に対応するペイロード

        Raises:
            TypeError: ペイロードの型が種類と一致しない場合
        """
        event_type = EventType(event)
        expected = EVENT_PAYLOADS[event_type]
        if not isinstance(payload, expected):
            raise TypeError(
                f"Event '{event_type.value}' expects {expected.__name__}, "
                f"got {type(payload).__name__}"
            )

        log = logger.info if self.verbose else logger.debug
        log(f"Event: {event_type.value}")

        # 通知中にoffされても残りのリスナーには届ける
        for handler in list(self._listeners[event_type]):
            try:
                handler(payload)
            except Exception:
                logger.exception(f"Error in '{event_type.value}' listener")
