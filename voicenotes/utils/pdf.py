"""
Sample PDF renderer for de-identified transcripts.
"""

from io import BytesIO
from datetime import datetime, timezone

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer
from xml.sax.saxutils import escape


def render_sample_pdf(text: str, vertical: str, created_at: datetime | None = None) -> bytes:
    """
    Render redacted (or synthetic) text as a one-column PDF.

    Args:
        text: already de-identified body text
        vertical: health | legal | ops, shown in the header
        created_at: stamp for the footer line (defaults to now)
    """
    buf = BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=letter,
        rightMargin=0.75*inch,
        leftMargin=0.75*inch,
        topMargin=0.75*inch,
        bottomMargin=0.75*inch,
        title=f"De-identified sample ({vertical})",
    )

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        'SampleTitle',
        parent=styles['Heading1'],
        fontSize=18,
        textColor=colors.HexColor('#1f2937'),
        spaceAfter=6,
        alignment=TA_CENTER,
        fontName='Helvetica-Bold'
    )
    meta_style = ParagraphStyle(
        'SampleMeta',
        parent=styles['Normal'],
        fontSize=9,
        textColor=colors.HexColor('#6b7280'),
        alignment=TA_CENTER,
        spaceAfter=18
    )
    body_style = ParagraphStyle(
        'SampleBody',
        parent=styles['Normal'],
        fontSize=11,
        leading=15,
        spaceAfter=8
    )

    stamp = (created_at or datetime.now(timezone.utc)).strftime('%Y-%m-%d %H:%M UTC')
    story = [
        Paragraph("De-identified sample: PII removed or generalized", title_style),
        Paragraph(f"Vertical: {escape(vertical)} &nbsp;|&nbsp; Generated {stamp}", meta_style),
    ]
    for para in (text or "").split("\n\n"):
        if para.strip():
            story.append(Paragraph(escape(para.strip()).replace("\n", "<br/>"), body_style))
            story.append(Spacer(1, 4))

    doc.build(story)
    return buf.getvalue()
