from __future__ import annotations

import html
import io
from typing import Any

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.platypus import HRFlowable, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle


STATUS_LABELS = {
    "matched": "Matched",
    "partial_match": "Partial Match",
    "mismatch": "Mismatch",
}

_STATUS_COLORS = {
    "matched": colors.HexColor("#15803d"),
    "partial_match": colors.HexColor("#b45309"),
    "mismatch": colors.HexColor("#b91c1c"),
}


def _styles() -> dict[str, ParagraphStyle]:
    base = getSampleStyleSheet()
    return {
        "title": ParagraphStyle("title", parent=base["Title"], fontSize=18, spaceAfter=4),
        "meta": ParagraphStyle("meta", parent=base["Normal"], fontSize=9, textColor=colors.HexColor("#4b5563")),
        "h2": ParagraphStyle("h2", parent=base["Heading2"], fontSize=12, spaceBefore=8, spaceAfter=4),
        "cell": ParagraphStyle("cell", parent=base["Normal"], fontSize=9, leading=11),
        "head": ParagraphStyle("head", parent=base["Normal"], fontSize=9, leading=11, textColor=colors.white),
        "footer": ParagraphStyle("footer", parent=base["Normal"], fontSize=8, textColor=colors.HexColor("#6b7280")),
    }


def _p(text: Any, style: ParagraphStyle) -> Paragraph:
    return Paragraph(html.escape(str(text if text is not None else "")), style)


def render_verification_report(record: dict[str, Any], *, company_name: str, support_email: str) -> bytes:
    """Render a serialized verification record (see actions.verification.serialize_verification) to PDF bytes."""
    styles = _styles()
    output = io.BytesIO()
    doc = SimpleDocTemplate(
        output,
        pagesize=A4,
        leftMargin=40,
        rightMargin=40,
        topMargin=42,
        bottomMargin=34,
        title=f"Verification Report {record.get('verificationId', '')}",
        author=company_name,
    )

    status = str(record.get("overallStatus") or "")
    story: list[Any] = [
        _p("Employment Verification Report", styles["title"]),
        _p(company_name, styles["meta"]),
        HRFlowable(width="100%", color=colors.HexColor("#d1d5db"), thickness=0.8, spaceBefore=4, spaceAfter=8),
    ]

    summary = Table(
        [
            [_p("Verification ID", styles["cell"]), _p(record.get("verificationId"), styles["cell"])],
            [_p("Employee ID", styles["cell"]), _p(record.get("employeeId"), styles["cell"])],
            [_p("Verified by", styles["cell"]), _p(record.get("verifierName") or record.get("verifierId"), styles["cell"])],
            [_p("Completed at", styles["cell"]), _p(record.get("completedAt") or record.get("createdAt"), styles["cell"])],
            [_p("Overall status", styles["cell"]), _p(STATUS_LABELS.get(status, status), styles["cell"])],
            [_p("Match score", styles["cell"]), _p(f"{int(record.get('matchScore') or 0)}%", styles["cell"])],
        ],
        colWidths=[doc.width * 0.3, doc.width * 0.7],
    )
    summary.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (0, -1), colors.HexColor("#f3f4f6")),
                ("BOX", (0, 0), (-1, -1), 0.6, colors.HexColor("#d1d5db")),
                ("INNERGRID", (0, 0), (-1, -1), 0.3, colors.HexColor("#e5e7eb")),
                ("TEXTCOLOR", (1, 4), (1, 4), _STATUS_COLORS.get(status, colors.black)),
                ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
            ]
        )
    )
    story.extend([summary, Spacer(1, 10), _p("Field comparison", styles["h2"])])

    rows: list[list[Any]] = [[_p(h, styles["head"]) for h in ("Field", "Submitted", "Company record", "Result")]]
    row_styles: list[tuple] = []
    for i, c in enumerate(record.get("comparisonResults") or [], start=1):
        is_match = bool(c.get("isMatch"))
        rows.append(
            [
                _p(c.get("label") or c.get("field"), styles["cell"]),
                _p(c.get("verifierValue"), styles["cell"]),
                _p(c.get("companyValue"), styles["cell"]),
                _p("Match" if is_match else "Mismatch", styles["cell"]),
            ]
        )
        if not is_match:
            row_styles.append(("BACKGROUND", (0, i), (-1, i), colors.HexColor("#fef2f2")))

    table = Table(rows, colWidths=[doc.width * 0.22, doc.width * 0.3, doc.width * 0.3, doc.width * 0.18], repeatRows=1)
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1e3a8a")),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                ("BOX", (0, 0), (-1, -1), 0.6, colors.HexColor("#d1d5db")),
                ("INNERGRID", (0, 0), (-1, -1), 0.3, colors.HexColor("#e5e7eb")),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
                *row_styles,
            ]
        )
    )
    story.extend(
        [
            table,
            Spacer(1, 14),
            _p(
                f"This report was generated electronically. For disputes raise an appeal or contact {support_email}.",
                styles["footer"],
            ),
        ]
    )

    doc.build(story)
    output.seek(0)
    return output.getvalue()
