"""マンネリ検出のPydanticモデル定義

会話メッセージ、解析結果、設定、永続化データの型をまとめる。
時刻はすべてエポックミリ秒（int）で扱う。
"""

import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def now_ms() -> int:
    """現在時刻（エポックミリ秒）"""
    return int(time.time() * 1000)


class Role(str, Enum):
    """メッセージの発言者"""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class Message(BaseModel):
    """会話メッセージ（ホスト側のデータなので変更しない）"""
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    role: Role
    content: str
    timestamp: Optional[int] = None  # エポックミリ秒


class TextAnalysisOptions(BaseModel):
    """テキスト解析オプション（純粋関数に毎回渡す値オブジェクト）"""
    model_config = ConfigDict(frozen=True)

    min_word_length: int = Field(default=2, ge=0)
    max_ngram_size: int = Field(default=3, ge=1)
    include_stop_words: bool = False
    case_sensitive: bool = False
    language: str = "auto"  # auto / ja / en


DEFAULT_TEXT_OPTIONS = TextAnalysisOptions()


class SimilarityResult(BaseModel):
    """類似度解析の結果（呼び出しごとに再計算）"""
    score: float = 0.0
    is_repeated: bool = False
    matched_messages: List[Message] = []


class KeywordFrequency(BaseModel):
    """キーワードの出現状況"""
    keyword: str
    frequency: int = 1
    score: float = 0.0
    first_seen: int
    last_seen: int
    contexts: List[str] = []   # 最大5件、各100文字まで


class TopicCluster(BaseModel):
    """関連キーワードのまとまり"""
    id: str
    keywords: List[str]
    score: float = 1.0
    message_count: int = 1
    first_message: int
    last_message: int


class TopicCategory(str, Enum):
    """話題のカテゴリ"""
    TECHNICAL = "technical"
    ENTERTAINMENT = "entertainment"
    DAILY_LIFE = "daily-life"
    OTHER = "other"


class TopicInfo(BaseModel):
    """話題の情報"""
    keywords: List[str]
    score: float
    category: TopicCategory = TopicCategory.OTHER
    confidence: float = 0.0


class ConversationPattern(BaseModel):
    """繰り返し検出されたメッセージ列"""
    id: str
    pattern: str               # シグネチャ
    frequency: int = Field(ge=2)
    first_seen: int
    last_seen: int
    messages: List[Message] = []


class RepeatedKeyword(BaseModel):
    """短い区間に集中して出現するキーワード"""
    keyword: str
    positions: List[int]
    density: float


class TopicShift(BaseModel):
    """話題の変化"""
    has_shift: bool
    similarity: float
    new_topics: List[str] = []
    old_topics: List[str] = []


class AnalysisResult(BaseModel):
    """1回の解析の判定結果"""
    similarity: SimilarityResult = Field(default_factory=SimilarityResult)
    topics: List[TopicInfo] = []
    patterns: List[ConversationPattern] = []
    should_intervene: bool = False
    intervention_reason: str = ""
    last_intervention: int = 0
    # 以下は判定に使わない診断情報
    repeated_keywords: List[RepeatedKeyword] = []
    topic_shift: Optional[TopicShift] = None


class PromptType(str, Enum):
    """介入プロンプトの種類"""
    TOPIC_CHANGE = "topic_change"
    PATTERN_BREAK = "pattern_break"
    KEYWORD_SHIFT = "keyword_shift"


class Priority(str, Enum):
    """優先度"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Severity(str, Enum):
    """パターンの重大度"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DiversificationPrompt(BaseModel):
    """話題転換を促すプロンプト"""
    content: str
    type: PromptType = PromptType.TOPIC_CHANGE
    priority: Priority = Priority.MEDIUM
    context: str = ""


class PromptTemplates(BaseModel):
    """言語ごとのプロンプトテンプレート"""
    intervention: List[str] = []


LocalizedPrompts = Dict[str, PromptTemplates]


class ManneriConfig(BaseModel):
    """マンネリ検出の設定"""
    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    similarity_threshold: float = Field(default=0.75, ge=0.0, le=1.0)
    repetition_limit: int = Field(default=3, ge=0)
    lookback_window: int = Field(default=10, ge=0)
    intervention_cooldown: int = Field(default=300000, ge=0)  # ミリ秒
    min_message_length: int = Field(default=10, ge=0)
    exclude_keywords: List[str] = Field(default_factory=lambda: [
        "はい", "そうですね", "そうです", "いいえ",
        "yes", "no", "ok", "okay",
    ])
    enable_topic_tracking: bool = True
    enable_keyword_analysis: bool = True
    debug_mode: bool = False
    # AIによるプロンプト生成（OpenRouter経由）
    enable_ai_prompt_generation: bool = False
    ai_prompt_generation_model: Optional[str] = None
    # 言語とプロンプト
    language: str = "ja"
    custom_prompts: Optional[Dict[str, PromptTemplates]] = None


class ManneriConfigUpdate(BaseModel):
    """設定の部分更新（指定したフィールドだけ反映する）"""
    model_config = ConfigDict(extra="forbid")

    similarity_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    repetition_limit: Optional[int] = Field(default=None, ge=0)
    lookback_window: Optional[int] = Field(default=None, ge=0)
    intervention_cooldown: Optional[int] = Field(default=None, ge=0)
    min_message_length: Optional[int] = Field(default=None, ge=0)
    exclude_keywords: Optional[List[str]] = None
    enable_topic_tracking: Optional[bool] = None
    enable_keyword_analysis: Optional[bool] = None
    debug_mode: Optional[bool] = None
    enable_ai_prompt_generation: Optional[bool] = None
    ai_prompt_generation_model: Optional[str] = None
    language: Optional[str] = None
    custom_prompts: Optional[Dict[str, PromptTemplates]] = None

    def changes(self) -> Dict[str, Any]:
        """明示的に指定されたフィールドのみ返す"""
        return self.model_dump(exclude_unset=True)


STORAGE_VERSION = "1.0.0"


class StorageData(BaseModel):
    """永続化の単位"""
    patterns: List[ConversationPattern] = []
    interventions: List[int] = []
    settings: Dict[str, Any] = {}
    last_cleanup: int = Field(default_factory=now_ms)
    version: str = STORAGE_VERSION
