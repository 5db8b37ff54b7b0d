from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from schemas.outline import SlideType


class SlideLayout(str, Enum):
    TITLE_ONLY = "title-only"
    TITLE_CONTENT = "title-content"
    TWO_COLUMN = "two-column"
    BULLET_LIST = "bullet-list"
    CENTERED = "centered"
    DIAGRAM = "diagram"
    METRICS = "metrics"
    CHART = "chart"
    CIRCLE = "circle"
    DIAMOND = "diamond"
    TABLE = "table"
    TIMELINE = "timeline"


DEFAULT_LAYOUTS: Dict[SlideType, SlideLayout] = {
    SlideType.TITLE: SlideLayout.TITLE_ONLY,
    SlideType.PROBLEM: SlideLayout.TITLE_CONTENT,
    SlideType.SOLUTION: SlideLayout.TWO_COLUMN,
    SlideType.BENEFITS: SlideLayout.METRICS,
    SlideType.IMPLEMENTATION: SlideLayout.TIMELINE,
    SlideType.FRAMEWORK: SlideLayout.DIAGRAM,
    SlideType.TIMELINE: SlideLayout.TIMELINE,
    SlideType.CONCLUSION: SlideLayout.CENTERED,
    SlideType.CHART: SlideLayout.CHART,
    SlideType.TABLE: SlideLayout.TABLE,
}


FALLBACK_CALLOUT = "Generation failed - please add content manually"


def default_layout_for(slide_type: SlideType) -> SlideLayout:
    return DEFAULT_LAYOUTS.get(slide_type, SlideLayout.TITLE_CONTENT)


def _string_list(v: Any) -> List[str]:
    if v is None:
        return []
    if isinstance(v, str):
        return [v]
    return [str(item) for item in v if item is not None and str(item).strip()]


class Section(BaseModel):
    title: str
    description: str = ""
    items: List[str] = Field(default_factory=list)
    highlight: bool = False

    @field_validator("items", mode="before")
    @classmethod
    def _items(cls, v: Any) -> List[str]:
        return _string_list(v)


class KeyMetric(BaseModel):
    label: str
    value: str
    description: Optional[str] = None
    trend: Optional[Literal["up", "down", "stable"]] = None

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> str:
        return str(v)


class DiagramElement(BaseModel):
    id: str
    label: str
    description: Optional[str] = None
    connections: List[str] = Field(default_factory=list)
    style: Optional[Literal["primary", "secondary", "accent", "warning"]] = None


class Diagram(BaseModel):
    type: Literal["flow", "hierarchy", "process", "comparison"] = "flow"
    elements: List[DiagramElement]


class Chart(BaseModel):
    type: Literal["bar", "line", "area", "pie", "donut", "radar", "scatter"] = "bar"
    data: List[Dict[str, Union[str, float, int]]]
    config: Dict[str, Any] = Field(default_factory=dict)
    title: Optional[str] = None
    description: Optional[str] = None


class Table(BaseModel):
    headers: List[str]
    rows: List[List[str]]
    title: Optional[str] = None
    description: Optional[str] = None
    highlight: List[int] = Field(default_factory=list)

    @field_validator("rows", mode="before")
    @classmethod
    def _stringify_cells(cls, v: Any) -> Any:
        if not isinstance(v, list):
            return v
        return [[("" if cell is None else str(cell)) for cell in row] if isinstance(row, list) else row for row in v]

    @model_validator(mode="after")
    def _rows_match_headers(self) -> "Table":
        width = len(self.headers)
        for index, row in enumerate(self.rows):
            if len(row) != width:
                raise ValueError(f"table row {index} has {len(row)} cells, expected {width}")
        return self


class TimelineEvent(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    date: Optional[str] = None
    status: Literal["completed", "current", "upcoming"] = "upcoming"


class Timeline(BaseModel):
    events: List[TimelineEvent]
    title: Optional[str] = None
    description: Optional[str] = None
    orientation: Literal["horizontal", "vertical"] = "horizontal"


class _ContentBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    main_text: Optional[str] = Field(None, alias="mainText")
    callout: Optional[str] = None
    quote: Optional[str] = None


class _BulletMixin(BaseModel):
    bullet_points: List[str] = Field(default_factory=list, alias="bulletPoints")

    @field_validator("bullet_points", mode="before")
    @classmethod
    def _bullets(cls, v: Any) -> List[str]:
        return _string_list(v)


class TitleOnlyContent(_ContentBase):
    layout: Literal["title-only"] = "title-only"


class TitleContentContent(_ContentBase, _BulletMixin):
    layout: Literal["title-content"] = "title-content"
    sections: List[Section] = Field(default_factory=list)


class TwoColumnContent(_ContentBase):
    layout: Literal["two-column"] = "two-column"
    sections: List[Section] = Field(default_factory=list)


class BulletListContent(_ContentBase, _BulletMixin):
    layout: Literal["bullet-list"] = "bullet-list"


class CenteredContent(_ContentBase, _BulletMixin):
    layout: Literal["centered"] = "centered"


class CircleContent(_ContentBase):
    layout: Literal["circle"] = "circle"
    sections: List[Section] = Field(default_factory=list)


class DiamondContent(_ContentBase):
    layout: Literal["diamond"] = "diamond"
    sections: List[Section] = Field(default_factory=list)


class DiagramContent(_ContentBase):
    layout: Literal["diagram"] = "diagram"
    diagram: Diagram


class MetricsContent(_ContentBase):
    layout: Literal["metrics"] = "metrics"
    key_metrics: List[KeyMetric] = Field(default_factory=list, alias="keyMetrics")


class ChartContent(_ContentBase):
    layout: Literal["chart"] = "chart"
    chart: Chart


class TableContent(_ContentBase):
    layout: Literal["table"] = "table"
    table: Table


class TimelineContent(_ContentBase):
    layout: Literal["timeline"] = "timeline"
    timeline: Timeline


SlideContent = Annotated[
    Union[
        TitleOnlyContent,
        TitleContentContent,
        TwoColumnContent,
        BulletListContent,
        CenteredContent,
        CircleContent,
        DiamondContent,
        DiagramContent,
        MetricsContent,
        ChartContent,
        TableContent,
        TimelineContent,
    ],
    Field(discriminator="layout"),
]


class SlideMetadata(BaseModel):
    speaker_notes: str = ""
    duration_minutes: float = 2
    audience_level: Literal["executive", "technical", "general"] = "general"
    importance: Optional[Literal["critical", "important", "supporting"]] = None

    @field_validator("audience_level", mode="before")
    @classmethod
    def _audience_level(cls, v: Any) -> str:
        value = str(v or "general").lower()
        return value if value in {"executive", "technical", "general"} else "general"

    @field_validator("duration_minutes", mode="before")
    @classmethod
    def _duration(cls, v: Any) -> float:
        try:
            return max(0.0, float(v))
        except (TypeError, ValueError):
            return 2

    @field_validator("importance", mode="before")
    @classmethod
    def _importance(cls, v: Any) -> Optional[str]:
        value = str(v or "").lower()
        return value if value in {"critical", "important", "supporting"} else None

    @field_validator("speaker_notes", mode="before")
    @classmethod
    def _notes(cls, v: Any) -> str:
        return "" if v is None else str(v)


class Slide(BaseModel):
    """A fully realised slide. ``content`` is always the variant for ``layout``."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: SlideType
    title: str
    subtitle: Optional[str] = None
    layout: SlideLayout
    content: SlideContent
    metadata: SlideMetadata = Field(default_factory=SlideMetadata)

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, v: Any) -> SlideType:
        return SlideType.coerce(v)

    @model_validator(mode="before")
    @classmethod
    def _inject_layout(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("content"), dict):
            layout = data.get("layout")
            if isinstance(layout, SlideLayout):
                layout = layout.value
            data = dict(data)
            data["content"] = {**data["content"], "layout": layout}
        return data

    @model_validator(mode="after")
    def _layout_agrees(self) -> "Slide":
        if self.content.layout != self.layout.value:
            raise ValueError(f"content variant '{self.content.layout}' does not match layout '{self.layout.value}'")
        return self

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Slide":
        return cls.model_validate(data)
