"""話題転換プロンプトの生成

言語ごとのテンプレートから、最近使っていないものをランダムに選ぶ。
"""

import logging
import random
from collections import OrderedDict
from typing import Dict, List, Mapping, Optional, Sequence, Union

from .analyzer import PATTERN_TRIGGER_FREQUENCY, TOPIC_TRIGGER_CONFIDENCE
from .models import (
    AnalysisResult,
    DiversificationPrompt,
    LocalizedPrompts,
    Message,
    Priority,
    PromptTemplates,
    PromptType,
)

logger = logging.getLogger(__name__)

MAX_PROMPT_HISTORY = 50
FALLBACK_PROMPT = "Please change the topic and talk about something new."

DEFAULT_PROMPTS: LocalizedPrompts = {
    "ja": PromptTemplates(intervention=[
        "話題を変えて、新しい内容について話してください。",
        "別の角度から話題を展開してみましょう。",
        "新しいテーマで会話を続けてください。",
        "会話に変化をもたらすため、違う話題にしてみませんか？",
    ]),
    "en": PromptTemplates(intervention=[
        "Please change the topic and talk about something new.",
        "Let's explore the topic from a different angle.",
        "Please continue the conversation with a new theme.",
        "How about changing to a different topic to bring variety to the conversation?",
    ]),
}

CustomPrompts = Mapping[str, Union[PromptTemplates, Dict, None]]


def override_prompts(
    defaults: LocalizedPrompts,
    custom: Optional[CustomPrompts] = None
) -> LocalizedPrompts:
    """
    デフォルトのテンプレートを言語単位で上書き

    interventionを持たない言語の指定は無視する。
    空のリストは有効な上書きとして扱う。
    """
    merged = dict(defaults)
    if not custom:
        return merged

    for language, templates in custom.items():
        if templates is None:
            continue
        if isinstance(templates, dict):
            if templates.get("intervention") is None:
                continue
            templates = PromptTemplates.model_validate(templates)
        merged[language] = templates

    return merged


def get_prompt_template(
    prompts: LocalizedPrompts,
    language: str,
    index: Optional[int] = None
) -> str:
    """指定言語（なければ英語）のテンプレートを1つ返す。indexが範囲外ならランダム"""
    templates = prompts.get(language) or prompts.get("en")
    if templates is None or not templates.intervention:
        return FALLBACK_PROMPT

    if index is not None and 0 <= index < len(templates.intervention):
        return templates.intervention[index]
    return random.choice(templates.intervention)


class PromptGenerator:
    """同じプロンプトが続かないように選ぶ"""

    def __init__(
        self,
        language: str = "ja",
        custom_prompts: Optional[CustomPrompts] = None,
        seed: Optional[int] = None
    ):
        self.language = language
        self.prompts = override_prompts(DEFAULT_PROMPTS, custom_prompts)
        self._random = random.Random(seed)
        # 言語ごとの使用履歴（挿入順 = 古い順）
        self._used: Dict[str, "OrderedDict[str, None]"] = {}

    def generate_diversification_prompt(
        self,
        messages: Sequence[Message],
        analysis: Optional[AnalysisResult] = None,
        language: Optional[str] = None
    ) -> DiversificationPrompt:
        """
        話題転換プロンプトを生成

        Args:
            messages: 会話履歴（件数だけを使う）
            analysis: 直近の解析結果（種類と優先度の決定に使う）
            language: 呼び出し時の言語指定

        Returns:
            DiversificationPrompt
        """
        language = language or self.language
        prompt_type, priority = self.classify(analysis)

        return DiversificationPrompt(
            content=self._get_intervention_prompt(language),
            type=prompt_type,
            priority=priority,
            context=f"Conversation length: {len(messages)} messages",
        )

    @staticmethod
    def classify(analysis: Optional[AnalysisResult]):
        """解析結果から (種類, 優先度) を決める"""
        if analysis is None:
            return PromptType.TOPIC_CHANGE, Priority.MEDIUM

        pattern_fired = any(p.frequency >= PATTERN_TRIGGER_FREQUENCY for p in analysis.patterns)
        topic_fired = any(t.confidence > TOPIC_TRIGGER_CONFIDENCE for t in analysis.topics)
        fired = sum([analysis.similarity.is_repeated, pattern_fired, topic_fired])

        if pattern_fired:
            prompt_type = PromptType.PATTERN_BREAK
        elif topic_fired:
            prompt_type = PromptType.KEYWORD_SHIFT
        else:
            prompt_type = PromptType.TOPIC_CHANGE

        if fired >= 2:
            priority = Priority.HIGH
        elif fired == 1:
            priority = Priority.MEDIUM
        else:
            priority = Priority.LOW
        return prompt_type, priority

    def _resolve_language(self, language: str) -> Optional[str]:
        if language in self.prompts:
            return language
        if "en" in self.prompts:
            return "en"
        return None

    def _get_intervention_prompt(self, language: str) -> str:
        resolved = self._resolve_language(language)
        if resolved is None or not self.prompts[resolved].intervention:
            return FALLBACK_PROMPT
        return self._select_unused(resolved, self.prompts[resolved].intervention)

    def _select_unused(self, language: str, templates: List[str]) -> str:
        used = self._used.setdefault(language, OrderedDict())
        available = [t for t in templates if t not in used]

        if not available:
            # 全部使い切ったら履歴をリセット（直前のものは避ける）
            last = next(reversed(used), None)
            used.clear()
            available = [t for t in templates if t != last] or list(templates)
            logger.debug(f"Prompt history exhausted for '{language}', reset")

        selected = self._random.choice(available)
        used[selected] = None
        while len(used) > MAX_PROMPT_HISTORY:
            used.popitem(last=False)
        return selected

    def clear_history(self):
        self._used.clear()
