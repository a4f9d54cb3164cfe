"""
Lightweight text signals: tokenizing, topic keywords, intent and emotion cues.

Handles mixed Chinese/English input. Latin text is split into words; runs
of CJK characters are kept as short phrases since there is no segmenter.
"""

import re
from typing import List

# Latin words or CJK runs
_TOKEN_RE = re.compile(r"[A-Za-z][A-Za-z0-9'\-]+|[一-鿿]+")

STOPWORDS = {
    "the", "and", "for", "that", "this", "with", "have", "just", "what", "when",
    "where", "which", "about", "there", "would", "could", "should", "been", "were",
    "your", "from", "they", "them", "then", "than", "will", "into", "really", "very",
    "going", "want", "like", "some", "does", "did", "can't", "don't", "i'm", "it's",
    "我们", "你们", "他们", "这个", "那个", "什么", "怎么", "因为", "所以", "但是", "然后", "就是", "还是",
}

QUESTION_CUES = ("?", "？", "吗", "呢", "什么", "怎么", "为什么", "哪", "多少", "how ", "what ", "why ",
                 "when ", "where ", "who ", "is it", "do you", "can i")
REQUEST_CUES = ("请", "帮我", "帮忙", "麻烦", "提醒我", "please", "can you", "could you", "remind me", "help me")
PLANNING_CUES = ("计划", "打算", "准备", "安排", "明天", "下周", "plan", "going to", "schedule", "next week",
                 "tomorrow", "will ")
REFLECTION_CUES = ("我觉得", "回想", "反思", "想起", "当时", "i think", "i feel", "looking back", "reflect",
                   "i realized", "i remember")

EMOTION_CUES = {
    "excited": ("太棒了", "激动", "兴奋", "期待", "!!", "！！", "excited", "can't wait", "amazing", "awesome"),
    "positive": ("开心", "高兴", "不错", "喜欢", "满意", "谢谢", "happy", "glad", "great", "love", "thanks"),
    "negative": ("难过", "伤心", "生气", "烦", "累", "担心", "焦虑", "压力", "sad", "angry", "upset",
                 "tired", "worried", "anxious", "stressed"),
    "confused": ("不明白", "不懂", "困惑", "搞不清", "confused", "don't understand", "not sure", "unclear"),
}

COMPLETION_CUES = ("完成了", "做完了", "搞定", "已经", "done", "finished", "completed")


def tokenize(text: str) -> List[str]:
    """
    Lowercase tokens.

    "We love Python" -> ["we", "love", "python"]; "我喜欢跑步" -> ["我喜欢跑步"]
    """
    return [t.lower() for t in _TOKEN_RE.findall(text or "")]


def extract_keywords(text: str, max_keywords: int = 8) -> List[str]:
    """Topic candidates in first-seen order, stopwords and short tokens removed."""
    out: List[str] = []
    for token in tokenize(text):
        is_cjk = "一" <= token[0] <= "鿿"
        if token in STOPWORDS:
            continue
        if is_cjk:
            if len(token) < 2:
                continue
            # Long CJK runs are sentences; keep a short head phrase
            token = token[:6]
        elif len(token) < 4:
            continue
        if token not in out:
            out.append(token)
        if len(out) >= max_keywords:
            break
    return out


def contains_any(text: str, cues) -> bool:
    lowered = (text or "").lower()
    return any(cue in lowered for cue in cues)
