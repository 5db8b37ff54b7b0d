from pptx import Presentation

from exporters.pptx_exporter import body_lines, export_to_pptx
from schemas.presentation import PresentationData
from schemas.slide import Slide

CONTENT_BY_LAYOUT = {
    "title-only": {"mainText": "Matching demand to supply"},
    "title-content": {"mainText": "Why now", "bulletPoints": ["Costs up"], "sections": [{"title": "Risk", "items": ["Outages"]}]},
    "two-column": {"sections": [{"title": "Today", "description": "Manual"}, {"title": "Tomorrow", "description": "Automated"}]},
    "bullet-list": {"bulletPoints": ["One", "Two"]},
    "centered": {"mainText": "Act now", "bulletPoints": ["Fund the pilot"], "quote": "Measure twice"},
    "circle": {"mainText": "Cycle", "sections": [{"title": "Plan"}, {"title": "Review"}]},
    "diamond": {"mainText": "Balance", "sections": [{"title": "Cost"}, {"title": "Speed"}]},
    "diagram": {"diagram": {"type": "flow", "elements": [{"id": "e1", "label": "Forecast", "description": "Demand"}]}},
    "metrics": {"keyMetrics": [{"label": "Utilisation", "value": 82, "description": "peak", "trend": "up"}]},
    "chart": {"chart": {"type": "bar", "title": "Load", "data": [{"name": "Q1", "value": 10}]}},
    "table": {"mainText": "By quarter", "table": {"headers": ["Quarter", "Servers"], "rows": [["Q1", 40], ["Q2", 44]]}},
    "timeline": {"timeline": {"events": [{"id": "t1", "title": "Pilot", "date": "Q1", "status": "current", "description": "Two teams"}]}},
}


def _slide(number, layout, content):
    return Slide.model_validate(
        {
            "id": f"slide-{number}",
            "type": "custom",
            "title": f"{layout} slide",
            "layout": layout,
            "content": {**content, "callout": "Decide by Friday"} if layout != "title-only" else content,
            "metadata": {"speaker_notes": f"Notes for {layout}"},
        }
    )


def _deck():
    slides = [_slide(number, layout, content) for number, (layout, content) in enumerate(CONTENT_BY_LAYOUT.items(), start=1)]
    return PresentationData(
        id="presentation-1",
        title="Capacity plan",
        metadata={"presentation_type": "business", "target_audience": "CTO"},
        slides=slides,
    )


def test_export_writes_every_slide(tmp_path):
    deck = _deck()
    target = tmp_path / "deck.pptx"
    export_to_pptx(deck, target)

    prs = Presentation(str(target))
    assert len(prs.slides) == len(CONTENT_BY_LAYOUT)
    titles = [slide.shapes.title.text for slide in prs.slides]
    assert titles == [slide.title for slide in deck.slides]
    assert prs.slides[0].notes_slide.notes_text_frame.text == "Notes for title-only"


def test_table_slide_gets_native_table(tmp_path):
    target = tmp_path / "deck.pptx"
    export_to_pptx(_deck(), target)

    table_slide = Presentation(str(target)).slides[10]
    tables = [shape.table for shape in table_slide.shapes if shape.has_table]
    assert len(tables) == 1
    assert tables[0].cell(0, 1).text == "Servers"
    assert tables[0].cell(2, 1).text == "44"


def test_body_lines_flatten_content():
    slides = {slide.layout.value: slide for slide in _deck().slides}
    assert body_lines(slides["title-content"]) == [
        ("Why now", 0),
        ("Costs up", 0),
        ("Risk", 0),
        ("Outages", 1),
        ("Decide by Friday", 0),
    ]
    assert ("Utilisation: 82 (peak)", 0) in body_lines(slides["metrics"])
    assert ('"Measure twice"', 0) in body_lines(slides["centered"])
    assert ("Q1 - Pilot [current]", 0) in body_lines(slides["timeline"])
    assert ("name: Q1, value: 10", 1) in body_lines(slides["chart"])
    assert body_lines(slides["table"]) == [("By quarter", 0), ("Decide by Friday", 0)]
