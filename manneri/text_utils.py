"""テキスト正規化・トークン化と類似度の基本関数

すべて副作用のない純粋関数。意味的な類似度は扱わず、
トークン／n-gramレベルの字句的な比較のみを行う。
"""

import math
import re
from collections import Counter
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from .models import DEFAULT_TEXT_OPTIONS, TextAnalysisOptions

# ひらがな・カタカナ・CJK統合漢字
_JAPANESE_CHAR = re.compile(r"[\u3040-\u309F\u30A0-\u30FF\u4E00-\u9FAF]")
_LATIN_CHAR = re.compile(r"[a-zA-Z0-9]")
_WHITESPACE = re.compile(r"\s+")
_JAPANESE_PUNCTUATION = re.compile(r"[、。！？]")

JAPANESE_STOP_WORDS = frozenset([
    "は", "が", "を", "に", "で", "と", "から", "まで", "より", "の", "や", "か",
    "な", "だ", "である", "です", "ます", "した", "します", "する", "されて",
    "いる", "いた", "ある", "あり", "あった", "この", "その", "あの", "どの",
    "ここ", "そこ", "あそこ", "どこ", "こと", "もの", "はい", "いいえ",
    "そうです", "そうですね",
])

ENGLISH_STOP_WORDS = frozenset([
    "the", "is", "at", "which", "on", "and", "a", "an", "as", "are", "was",
    "were", "been", "be", "have", "has", "had", "do", "does", "did", "will",
    "would", "could", "should", "may", "might", "must", "can", "i", "you",
    "he", "she", "it", "we", "they", "me", "him", "her", "us", "them", "my",
    "your", "his", "its", "our", "their", "this", "that", "these", "those",
    "yes", "no", "ok", "okay",
])

MAX_KEYWORDS_PER_TEXT = 10
# これ未満のトークン数ならJaccardのみで判定
SHORT_TEXT_TOKENS = 5


def _require_text(text: Optional[str]) -> str:
    if text is None:
        raise ValueError("text must not be None")
    return text


def round_half_up(value: float, digits: int = 0):
    """四捨五入（0.5は常に切り上げる）。digits=0ならintを返す"""
    rounded = Decimal(str(value)).quantize(Decimal(1).scaleb(-digits), rounding=ROUND_HALF_UP)
    return int(rounded) if digits == 0 else float(rounded)


def contains_japanese(text: str) -> bool:
    """日本語の文字を含むか"""
    return bool(_JAPANESE_CHAR.search(text))


def _is_japanese(text: str, options: TextAnalysisOptions) -> bool:
    return options.language == "ja" or (
        options.language == "auto" and contains_japanese(text)
    )


def normalize_text(text: str, options: TextAnalysisOptions = DEFAULT_TEXT_OPTIONS) -> str:
    """前後の空白除去、小文字化、空白の圧縮（日本語は句読点も除去）"""
    text = _require_text(text)
    normalized = text.strip()
    if not options.case_sensitive:
        normalized = normalized.lower()
    normalized = _WHITESPACE.sub(" ", normalized)
    if _is_japanese(text, options):
        normalized = _JAPANESE_PUNCTUATION.sub("", normalized)
    return normalized


def _tokenize_japanese(text: str) -> List[str]:
    """文字種（日本語 / 英数字）の連続でトークンを区切る"""
    tokens = []
    current = ""
    current_is_japanese = False

    for char in text:
        if _JAPANESE_CHAR.match(char):
            if current and not current_is_japanese:
                tokens.append(current)
                current = ""
            current += char
            current_is_japanese = True
        elif _LATIN_CHAR.match(char):
            if current and current_is_japanese:
                tokens.append(current)
                current = ""
            current += char
            current_is_japanese = False
        elif current:
            # それ以外の文字は区切り
            tokens.append(current)
            current = ""

    if current:
        tokens.append(current)
    return tokens


def is_stop_word(word: str, japanese: bool) -> bool:
    stop_words = JAPANESE_STOP_WORDS if japanese else ENGLISH_STOP_WORDS
    return word.lower() in stop_words


def tokenize(text: str, options: TextAnalysisOptions = DEFAULT_TEXT_OPTIONS) -> List[str]:
    """
    テキストをトークンに分割

    Args:
        text: 対象テキスト（Noneは呼び出し側のバグとしてValueError）
        options: 解析オプション

    Returns:
        最小長・ストップワードでフィルタ済みのトークン列
    """
    normalized = normalize_text(text, options)
    japanese = _is_japanese(text, options)

    if japanese:
        tokens = _tokenize_japanese(normalized)
    else:
        tokens = normalized.split()

    tokens = [t for t in tokens if len(t) >= options.min_word_length]
    if not options.include_stop_words:
        tokens = [t for t in tokens if not is_stop_word(t, japanese)]
    return tokens


def generate_ngrams(tokens: Sequence[str], n: int) -> List[str]:
    """スライディングウィンドウでn-gramを生成"""
    if n <= 0 or n > len(tokens):
        return []
    return [" ".join(tokens[i:i + n]) for i in range(len(tokens) - n + 1)]


def jaccard_similarity(set1: Iterable[str], set2: Iterable[str]) -> float:
    set1, set2 = set(set1), set(set2)
    if not set1 and not set2:
        return 1.0
    return len(set1 & set2) / len(set1 | set2)


def cosine_similarity(vector1: Sequence[float], vector2: Sequence[float]) -> float:
    if len(vector1) != len(vector2):
        return 0.0

    dot = sum(a * b for a, b in zip(vector1, vector2))
    norm1 = math.sqrt(sum(a * a for a in vector1))
    norm2 = math.sqrt(sum(b * b for b in vector2))
    if norm1 == 0 or norm2 == 0:
        return 0.0
    return dot / (norm1 * norm2)


def create_tfidf_vector(
    tokens: Sequence[str],
    vocabulary: Sequence[str],
    document_frequencies: Dict[str, int],
    total_documents: int
) -> List[float]:
    """語彙順のTF-IDFベクトル"""
    if not tokens:
        return [0.0] * len(vocabulary)
    counts = Counter(tokens)
    vector = []
    for term in vocabulary:
        tf = counts.get(term, 0) / len(tokens)
        df = document_frequencies.get(term) or 1
        vector.append(tf * math.log(total_documents / df))
    return vector


def extract_keywords(text: str, options: TextAnalysisOptions = DEFAULT_TEXT_OPTIONS) -> List[str]:
    """出現回数の多いトークン上位10件（同数は先に出た順）"""
    counts = Counter(tokenize(text, options))
    return [token for token, _ in counts.most_common(MAX_KEYWORDS_PER_TEXT)]


def calculate_text_similarity(
    text1: str,
    text2: str,
    options: TextAnalysisOptions = DEFAULT_TEXT_OPTIONS
) -> float:
    """
    2つのテキストの字句的な類似度（0.0〜1.0、対称）

    正規化後に完全一致なら1.0。短いテキストやJaccardが非常に高い場合は
    Jaccardをそのまま返し、それ以外はJaccardと出現頻度コサインの平均。
    """
    normalized1 = normalize_text(text1, options)
    normalized2 = normalize_text(text2, options)

    if normalized1 == normalized2:
        return 1.0
    if not normalized1 or not normalized2:
        return 0.0

    tokens1 = tokenize(text1, options)
    tokens2 = tokenize(text2, options)

    if not tokens1 and not tokens2:
        return 1.0
    if not tokens1 or not tokens2:
        return 0.0

    jaccard = jaccard_similarity(tokens1, tokens2)
    if len(tokens1) < SHORT_TEXT_TOKENS or len(tokens2) < SHORT_TEXT_TOKENS or jaccard > 0.9:
        return jaccard

    # 語彙はソート順（引数の順序に依存しない）
    vocabulary = sorted(set(tokens1) | set(tokens2))
    freq1 = Counter(tokens1)
    freq2 = Counter(tokens2)
    vector1 = [freq1.get(term, 0) for term in vocabulary]
    vector2 = [freq2.get(term, 0) for term in vocabulary]

    return (jaccard + cosine_similarity(vector1, vector2)) / 2
