"""
iching/models/divination.py

Divination request/response and local history models.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

QUESTION_MIN_LENGTH = 5


class DivinationRequest(BaseModel):
    """Three 3-digit numbers (000-999) and a question of at least 5 characters."""
    model_config = ConfigDict(frozen=True)

    n1: int = Field(ge=0, le=999)
    n2: int = Field(ge=0, le=999)
    n3: int = Field(ge=0, le=999)
    question: str
    locale: str = "zh-TW"

    @field_validator("question")
    @classmethod
    def _question_long_enough(cls, v: str) -> str:
        v = v.strip()
        if len(v) < QUESTION_MIN_LENGTH:
            raise ValueError(f"question must be at least {QUESTION_MIN_LENGTH} characters")
        return v


class Explanation(BaseModel):
    plain: str
    tips: List[str] = Field(default_factory=list)


class DivinationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    lower_trigram: str = Field(alias="lowerTrigram")
    upper_trigram: str = Field(alias="upperTrigram")
    hexagram_name: str = Field(alias="hexagramName")
    changing_line: int = Field(alias="changingLine")
    explanation: Explanation
    debug: Optional[dict] = None


class HistoryItem(BaseModel):
    """One stored reading. Items written by older app versions without the reading body are dropped."""
    model_config = ConfigDict(populate_by_name=True)

    timestamp: int  # epoch ms
    n1: int
    n2: int
    n3: int
    question: str = Field(min_length=1)
    hexagram_name: str = Field(alias="hexagramName")
    changing_line: int = Field(alias="changingLine")
    lower_trigram: str = Field(alias="lowerTrigram", min_length=1)
    upper_trigram: str = Field(alias="upperTrigram", min_length=1)
    explanation: Explanation
