"""Branded PDF rendering for unlocked proposals."""

from html import escape
from io import BytesIO
from typing import Any, List, Optional

from reportlab.lib import colors
from reportlab.lib.pagesizes import LETTER
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import ListFlowable, ListItem, Paragraph, SimpleDocTemplate, Spacer

from scopegen.db import Proposal, User

PRIMARY_COLOR = colors.Color(0.07, 0.09, 0.15)


def _money(value: int) -> str:
    return f"${value:,.0f}"


def _days(low: Optional[int], high: Optional[int]) -> Optional[str]:
    if low and high and low != high:
        return f"{low}-{high} working days"
    if low or high:
        return f"{low or high} working days"
    return None


def render_proposal_pdf(proposal: Proposal, contractor: Optional[User]) -> bytes:
    buffer = BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=LETTER, title=f"Proposal #{proposal.id}")
    styles = getSampleStyleSheet()
    flowables: List[Any] = []

    title_style = styles["Title"]
    title_style.textColor = PRIMARY_COLOR
    heading_style = styles["Heading2"]
    heading_style.textColor = PRIMARY_COLOR
    body_style = styles["BodyText"]
    body_style.leading = 16

    company = contractor.company_name if contractor and contractor.company_name else "Proposal"
    flowables.append(Paragraph(escape(company), title_style))
    contact = [
        value
        for value in (
            contractor.company_address if contractor else None,
            contractor.company_phone if contractor else None,
            f"License #{contractor.license_number}" if contractor and contractor.license_number else None,
        )
        if value
    ]
    if contact:
        flowables.append(Paragraph(escape(" | ".join(contact)), body_style))
    flowables.append(Spacer(1, 18))

    flowables.append(Paragraph(escape(proposal.job_type_name), heading_style))
    flowables.append(Paragraph(f"Prepared for {escape(proposal.client_name)}", body_style))
    flowables.append(Paragraph(escape(proposal.address), body_style))
    flowables.append(Spacer(1, 12))

    flowables.append(Paragraph("Scope of Work", heading_style))
    flowables.append(
        ListFlowable(
            [ListItem(Paragraph(escape(item), body_style)) for item in proposal.scope or []],
            bulletType="bullet",
        )
    )
    flowables.append(Spacer(1, 12))

    flowables.append(Paragraph("Investment", heading_style))
    flowables.append(
        Paragraph(f"{_money(proposal.price_low)} - {_money(proposal.price_high)}", body_style)
    )
    timeline = _days(proposal.estimated_days_low, proposal.estimated_days_high)
    if timeline:
        flowables.append(Paragraph(f"Estimated timeline: {timeline}", body_style))
    flowables.append(Spacer(1, 12))

    if proposal.accepted_at:
        flowables.append(Paragraph("Acceptance", heading_style))
        flowables.append(
            Paragraph(
                f"Accepted by {escape(proposal.accepted_by_name or '')} on "
                f"{proposal.accepted_at:%B %d, %Y}",
                body_style,
            )
        )
        if proposal.contractor_signed_at:
            flowables.append(
                Paragraph(f"Countersigned on {proposal.contractor_signed_at:%B %d, %Y}", body_style)
            )

    doc.build(flowables)
    return buffer.getvalue()
