"""
certificates.py – Completion certificates
==========================================
``generate_completion_certificate`` assembles an immutable Certificate from
a completed session: session metadata, the completed steps in path order
and every achievement awarded to the session.  It is read-only, and both
``certificate_id`` and ``issued_at`` are derived from the session, so two
calls for the same session return equal values.

``render_certificate_pdf`` turns a Certificate into PDF bytes with
reportlab, in the same banner / KPI-row layout as the progress reports.
"""

from __future__ import annotations

import hashlib
import io
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from onboarding_engine.errors import SessionNotCompleteError
from onboarding_engine.models import Achievement, SessionStatus, StepStatus
from onboarding_engine.progress_store import validate_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CertificateStep:
    step_id:      str
    title:        str
    completed_at: Optional[datetime]
    time_spent:   float
    score:        Optional[float]


@dataclass(frozen=True)
class Certificate:
    certificate_id:     str
    session_id:         str
    user_id:            str
    path_id:            str
    path_name:          str
    started_at:         datetime
    completed_at:       datetime
    issued_at:          datetime
    total_time_minutes: float
    completed_steps:    tuple[CertificateStep, ...]
    achievements:       tuple[Achievement, ...]

    @property
    def total_points(self) -> int:
        return sum(int(a.data.get("points", 0)) for a in self.achievements)


def certificate_id_for(session_id: str) -> str:
    digest = hashlib.sha256(session_id.encode("utf-8")).hexdigest()[:16]
    return f"cert_{digest}"


class CertificateGenerator:

    def __init__(self, store) -> None:
        self.store = store

    def generate_completion_certificate(self, session_id: str) -> Certificate:
        validate_id(session_id, "session_id")
        session = self.store.get_session(session_id)   # NotFoundError when missing
        if session.status != SessionStatus.COMPLETED or session.completed_at is None:
            raise SessionNotCompleteError(
                f"Session {session_id} is {session.status.value}, not completed",
                "generate_completion_certificate",
                {"session_id": session_id, "status": session.status.value},
            )

        path = self.store.get_path(session.path_id)
        records = {r.step_id: r for r in self.store.get_progress_records(session_id)}
        steps = tuple(
            CertificateStep(
                step_id      = step.step_id,
                title        = step.title or step.step_id,
                completed_at = records[step.step_id].completed_at,
                time_spent   = records[step.step_id].time_spent,
                score        = records[step.step_id].score,
            )
            for step in path.ordered_steps()
            if step.step_id in records and records[step.step_id].status == StepStatus.COMPLETED
        )

        certificate = Certificate(
            certificate_id     = certificate_id_for(session_id),
            session_id         = session_id,
            user_id            = session.user_id,
            path_id            = path.path_id,
            path_name          = path.name,
            started_at         = session.started_at,
            completed_at       = session.completed_at,
            issued_at          = session.completed_at,
            total_time_minutes = round(sum(s.time_spent for s in steps), 2),
            completed_steps    = steps,
            achievements       = tuple(self.store.get_achievements(session_id)),
        )
        logger.debug("Assembled certificate %s for session %s", certificate.certificate_id, session_id)
        return certificate


# ─── PDF rendering ───────────────────────────────────────────────────────────

def _rl_colour(hex_str: str):
    """Convert a CSS hex colour string to a reportlab Color."""
    from reportlab.lib import colors as rl_colors
    h = hex_str.lstrip("#")
    if len(h) == 3:
        h = "".join(c * 2 for c in h)
    r, g, b = int(h[0:2], 16) / 255, int(h[2:4], 16) / 255, int(h[4:6], 16) / 255
    return rl_colors.Color(r, g, b)


def render_certificate_pdf(certificate: Certificate) -> bytes:
    """
    Build a one-page completion certificate.
    Returns raw PDF bytes.
    """
    from reportlab.lib.pagesizes import A4
    from reportlab.lib import colors as rl_colors
    from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
    from reportlab.lib.units import cm
    from reportlab.lib.enums import TA_CENTER
    from reportlab.platypus import (
        SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle, HRFlowable,
    )

    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf, pagesize=A4,
        leftMargin=1.8 * cm, rightMargin=1.8 * cm,
        topMargin=1.8 * cm, bottomMargin=1.8 * cm,
        title=f"Certificate {certificate.certificate_id}",
    )

    styles = getSampleStyleSheet()
    PURPLE = _rl_colour("#5C2D91")
    DARK   = _rl_colour("#1f2937")
    MUTED  = _rl_colour("#6b7280")
    GREEN  = _rl_colour("#107c10")
    WHITE  = rl_colors.white
    LIGHT  = _rl_colour("#f3f4ff")

    h1 = ParagraphStyle("H1", parent=styles["Heading1"],
                         textColor=WHITE, fontSize=18, leading=22, alignment=TA_CENTER)
    h2 = ParagraphStyle("H2", parent=styles["Heading2"],
                         textColor=PURPLE, fontSize=12, leading=15, spaceBefore=12, spaceAfter=4)
    body = ParagraphStyle("Body", parent=styles["Normal"],
                           textColor=DARK, fontSize=9, leading=13)
    small = ParagraphStyle("Small", parent=styles["Normal"],
                            textColor=MUTED, fontSize=8, leading=11)
    centre = ParagraphStyle("Centre", parent=styles["Normal"],
                             textColor=DARK, alignment=TA_CENTER, fontSize=9)

    story = []
    issued = certificate.issued_at.strftime("%B %d, %Y")

    # ── Header banner ─────────────────────────────────────────────────────────
    banner_table = Table([[Paragraph(
        f"<b>Certificate of Completion</b><br/>"
        f"<font size='10'>{certificate.path_name} · {certificate.user_id} · {issued}</font>",
        h1,
    )]], colWidths=[doc.width])
    banner_table.setStyle(TableStyle([
        ("BACKGROUND",    (0, 0), (-1, -1), PURPLE),
        ("ROWPADDING",    (0, 0), (-1, -1), 10),
        ("TOPPADDING",    (0, 0), (-1, -1), 14),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 14),
    ]))
    story.append(banner_table)
    story.append(Spacer(1, 0.4 * cm))

    # ── KPI row ───────────────────────────────────────────────────────────────
    kpi_data = [
        ["Steps Completed", "Time Invested", "Achievements", "Points"],
        [
            Paragraph(f"<b>{len(certificate.completed_steps)}</b>", centre),
            Paragraph(f"<b>{certificate.total_time_minutes:.0f} min</b>", centre),
            Paragraph(f"<b>{len(certificate.achievements)}</b>", centre),
            Paragraph(f"<b>{certificate.total_points}</b>", centre),
        ],
    ]
    kpi_w = doc.width / 4
    kpi_table = Table(kpi_data, colWidths=[kpi_w] * 4)
    kpi_table.setStyle(TableStyle([
        ("BACKGROUND",     (0, 0), (-1, 0), PURPLE),
        ("TEXTCOLOR",      (0, 0), (-1, 0), WHITE),
        ("FONTNAME",       (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE",       (0, 0), (-1, 0), 8),
        ("ALIGN",          (0, 0), (-1, -1), "CENTER"),
        ("VALIGN",         (0, 0), (-1, -1), "MIDDLE"),
        ("ROWPADDING",     (0, 0), (-1, -1), 6),
        ("ROWBACKGROUNDS", (0, 1), (-1, -1), [LIGHT]),
        ("GRID",           (0, 0), (-1, -1), 0.5, rl_colors.lightgrey),
    ]))
    story.append(kpi_table)

    # ── Completed steps ───────────────────────────────────────────────────────
    story.append(Spacer(1, 0.3 * cm))
    story.append(Paragraph("Completed Steps", h2))
    story.append(HRFlowable(width="100%", thickness=1, color=PURPLE))
    story.append(Spacer(1, 0.15 * cm))

    rows = [["#", "Step", "Completed", "Time"]]
    for i, step in enumerate(certificate.completed_steps, start=1):
        done = step.completed_at.strftime("%Y-%m-%d") if step.completed_at else "-"
        rows.append([str(i), Paragraph(step.title, body), done, f"{step.time_spent:.0f} min"])
    step_table = Table(rows, colWidths=[1 * cm, doc.width - 7 * cm, 3.5 * cm, 2.5 * cm])
    step_table.setStyle(TableStyle([
        ("BACKGROUND",     (0, 0), (-1, 0), PURPLE),
        ("TEXTCOLOR",      (0, 0), (-1, 0), WHITE),
        ("FONTNAME",       (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE",       (0, 0), (-1, -1), 8),
        ("VALIGN",         (0, 0), (-1, -1), "MIDDLE"),
        ("ROWBACKGROUNDS", (0, 1), (-1, -1), [WHITE, LIGHT]),
        ("GRID",           (0, 0), (-1, -1), 0.5, rl_colors.lightgrey),
    ]))
    story.append(step_table)

    # ── Achievements ──────────────────────────────────────────────────────────
    if certificate.achievements:
        story.append(Paragraph("Achievements", h2))
        for ach in certificate.achievements:
            story.append(Paragraph(
                f"<font color='#107c10'>•</font> <b>{ach.milestone_key.replace('_', ' ').title()}</b>"
                f" · {ach.awarded_at.strftime('%Y-%m-%d')}",
                body,
            ))

    story.append(Spacer(1, 0.6 * cm))
    story.append(HRFlowable(width="100%", thickness=0.5, color=GREEN))
    story.append(Paragraph(
        f"Certificate ID {certificate.certificate_id} · session {certificate.session_id}", small,
    ))

    doc.build(story)
    return buf.getvalue()
