from __future__ import annotations

import logging
from pathlib import Path
from typing import BinaryIO, List, Tuple, Union

from pptx import Presentation
from pptx.util import Inches

from schemas.presentation import PresentationData
from schemas.slide import (
    BulletListContent,
    CenteredContent,
    ChartContent,
    CircleContent,
    DiagramContent,
    DiamondContent,
    MetricsContent,
    Section,
    Slide,
    TableContent,
    TimelineContent,
    TitleContentContent,
    TitleOnlyContent,
    TwoColumnContent,
)

logger = logging.getLogger(__name__)

PPTX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.presentationml.presentation"

# Indices into the default python-pptx template
TITLE_LAYOUT = 0
CONTENT_LAYOUT = 1
TITLE_ONLY_LAYOUT = 5

Line = Tuple[str, int]


def _section_lines(sections: List[Section]) -> List[Line]:
    lines: List[Line] = []
    for section in sections:
        heading = f"{section.title}: {section.description}" if section.description else section.title
        lines.append((heading, 0))
        lines.extend((item, 1) for item in section.items)
    return lines


def body_lines(slide: Slide) -> List[Line]:
    """Flatten a slide's content into (text, indent level) pairs."""
    content = slide.content
    lines: List[Line] = [(content.main_text, 0)] if content.main_text else []

    if isinstance(content, TitleOnlyContent):
        pass
    elif isinstance(content, TitleContentContent):
        lines.extend((bullet, 0) for bullet in content.bullet_points)
        lines.extend(_section_lines(content.sections))
    elif isinstance(content, (BulletListContent, CenteredContent)):
        lines.extend((bullet, 0) for bullet in content.bullet_points)
    elif isinstance(content, (TwoColumnContent, CircleContent, DiamondContent)):
        lines.extend(_section_lines(content.sections))
    elif isinstance(content, DiagramContent):
        for element in content.diagram.elements:
            lines.append((element.label + (f": {element.description}" if element.description else ""), 0))
    elif isinstance(content, MetricsContent):
        for metric in content.key_metrics:
            text = f"{metric.label}: {metric.value}"
            if metric.description:
                text += f" ({metric.description})"
            lines.append((text, 0))
    elif isinstance(content, ChartContent):
        if content.chart.title:
            lines.append((content.chart.title, 0))
        for point in content.chart.data:
            lines.append((", ".join(f"{key}: {value}" for key, value in point.items()), 1))
    elif isinstance(content, TableContent):
        # Rendered as a native table by the caller
        pass
    elif isinstance(content, TimelineContent):
        for event in content.timeline.events:
            label = f"{event.date} - {event.title}" if event.date else event.title
            lines.append((f"{label} [{event.status}]", 0))
            if event.description:
                lines.append((event.description, 1))
    else:
        raise TypeError(f"Unsupported slide content: {type(content).__name__}")

    if content.quote:
        lines.append((f'"{content.quote}"', 0))
    if content.callout:
        lines.append((content.callout, 0))
    return lines


def _fill_text_frame(text_frame, lines: List[Line]) -> None:
    text_frame.clear()
    for index, (text, level) in enumerate(lines):
        paragraph = text_frame.paragraphs[0] if index == 0 else text_frame.add_paragraph()
        paragraph.text = text
        paragraph.level = level


def _add_table(pptx_slide, content: TableContent, top: float) -> None:
    table = content.table
    rows, cols = len(table.rows) + 1, max(1, len(table.headers))
    shape = pptx_slide.shapes.add_table(rows, cols, Inches(0.5), Inches(top), Inches(9), Inches(0.4 * rows))
    grid = shape.table
    for col, header in enumerate(table.headers):
        grid.cell(0, col).text = header
    for row_index, row in enumerate(table.rows, start=1):
        for col, value in enumerate(row):
            grid.cell(row_index, col).text = value


def _render_slide(prs, slide: Slide) -> None:
    content = slide.content
    if isinstance(content, TitleOnlyContent):
        pptx_slide = prs.slides.add_slide(prs.slide_layouts[TITLE_LAYOUT])
        pptx_slide.shapes.title.text = slide.title
        subtitle = slide.subtitle or content.main_text or ""
        if len(pptx_slide.placeholders) > 1:
            pptx_slide.placeholders[1].text = subtitle
    elif isinstance(content, TableContent):
        pptx_slide = prs.slides.add_slide(prs.slide_layouts[TITLE_ONLY_LAYOUT])
        pptx_slide.shapes.title.text = slide.title
        lines = body_lines(slide)
        top = 1.5
        if lines:
            box = pptx_slide.shapes.add_textbox(Inches(0.5), Inches(1.3), Inches(9), Inches(0.8))
            _fill_text_frame(box.text_frame, lines)
            top = 2.2
        _add_table(pptx_slide, content, top)
    else:
        pptx_slide = prs.slides.add_slide(prs.slide_layouts[CONTENT_LAYOUT])
        pptx_slide.shapes.title.text = slide.title
        _fill_text_frame(pptx_slide.placeholders[1].text_frame, body_lines(slide))

    if slide.metadata.speaker_notes:
        pptx_slide.notes_slide.notes_text_frame.text = slide.metadata.speaker_notes


def export_to_pptx(presentation: PresentationData, destination: Union[str, Path, BinaryIO]) -> None:
    """Write ``presentation`` as a .pptx file to a path or binary stream."""
    prs = Presentation()
    for slide in presentation.slides:
        _render_slide(prs, slide)
    if isinstance(destination, Path):
        destination = str(destination)
    prs.save(destination)
    logger.info("Exported '%s' (%d slides) to pptx", presentation.title, len(presentation.slides))
