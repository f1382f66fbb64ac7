"""Render commission invoices and credit notes as PDF."""
import io
from xml.sax.saxutils import escape
from reportlab.lib.pagesizes import letter
from reportlab.lib import colors
from reportlab.lib.units import inch
from reportlab.platypus import (
    SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer, HRFlowable,
)
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.enums import TA_RIGHT

from settlement.core.config import settings
from settlement.core.timeutils import utcnow
from settlement.models.invoice import CommissionInvoice, InvoiceStatus, InvoiceType


def _styles():
    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(
        name='PlatformName',
        parent=styles['Heading1'],
        fontSize=18,
        textColor=colors.HexColor('#1e3a8a'),
        spaceAfter=2,
    ))
    styles.add(ParagraphStyle(
        name='DocTitle',
        parent=styles['Heading2'],
        fontSize=14,
        textColor=colors.HexColor('#334155'),
        spaceAfter=4,
    ))
    styles.add(ParagraphStyle(
        name='SectionHeader',
        parent=styles['Heading3'],
        fontSize=11,
        textColor=colors.HexColor('#1e293b'),
        spaceBefore=8,
        spaceAfter=4,
    ))
    styles.add(ParagraphStyle(
        name='SmallRight',
        parent=styles['Normal'],
        fontSize=8,
        alignment=TA_RIGHT,
        textColor=colors.HexColor('#64748b'),
    ))
    styles.add(ParagraphStyle(name='TableCell', parent=styles['Normal'], fontSize=8.5, leading=10))
    styles.add(ParagraphStyle(
        name='TableCellRight', parent=styles['Normal'], fontSize=8.5, leading=10, alignment=TA_RIGHT,
    ))
    return styles


def generate_invoice_pdf(invoice: CommissionInvoice) -> bytes:
    """Build the PDF for one invoice, including its lines."""
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=letter,
        rightMargin=0.6 * inch,
        leftMargin=0.6 * inch,
        topMargin=0.6 * inch,
        bottomMargin=0.6 * inch,
        title=f"Invoice {invoice.invoice_number}",
    )
    styles = _styles()
    fmt = lambda n: f"{invoice.currency} {n:,.2f}"

    is_credit = invoice.invoice_type == InvoiceType.CREDIT_NOTE
    title = "Credit Note" if is_credit else "Commission Invoice"

    story = []
    story.append(Paragraph(settings.PLATFORM_NAME, styles['PlatformName']))
    story.append(Paragraph(f"{title} {invoice.invoice_number}", styles['DocTitle']))
    story.append(HRFlowable(width="100%", thickness=1, color=colors.HexColor('#1e3a8a')))
    story.append(Spacer(1, 8))

    info_data = [
        ["Seller:", invoice.seller_id, "Issued:", f"{invoice.issue_date:%Y-%m-%d}"],
        ["Period:", f"{invoice.year}-{invoice.month:02d}", "Due:",
         f"{invoice.due_date:%Y-%m-%d}" if invoice.due_date else "-"],
        ["Status:", invoice.status.value.title(), "Settlement:", str(invoice.settlement_id or "-")],
    ]
    if is_credit and invoice.original_invoice_id:
        info_data.append(["Credits:", f"Invoice #{invoice.original_invoice_id}", "", ""])
    info_table = Table(info_data, colWidths=[0.9 * inch, 2.6 * inch, 0.9 * inch, 2.6 * inch])
    info_table.setStyle(TableStyle([
        ('FONTSIZE', (0, 0), (-1, -1), 9),
        ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
        ('FONTNAME', (2, 0), (2, -1), 'Helvetica-Bold'),
        ('TEXTCOLOR', (0, 0), (0, -1), colors.HexColor('#475569')),
        ('TEXTCOLOR', (2, 0), (2, -1), colors.HexColor('#475569')),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 3),
        ('TOPPADDING', (0, 0), (-1, -1), 3),
    ]))
    story.append(info_table)
    story.append(Spacer(1, 12))

    story.append(Paragraph(f"Lines ({len(invoice.lines)})", styles['SectionHeader']))
    table_data = [[
        Paragraph("<b>Description</b>", styles['TableCell']),
        Paragraph("<b>Amount</b>", styles['TableCellRight']),
    ]]
    for line in invoice.lines:
        table_data.append([
            Paragraph(escape(line.description[:120]), styles['TableCell']),
            Paragraph(fmt(line.amount), styles['TableCellRight']),
        ])
    table_data.append([
        Paragraph("<b>Total</b>", styles['TableCell']),
        Paragraph(f"<b>{fmt(invoice.amount)}</b>", styles['TableCellRight']),
    ])

    detail_table = Table(table_data, colWidths=[5.5 * inch, 1.5 * inch], repeatRows=1)
    style_cmds = [
        ('VALIGN', (0, 0), (-1, -1), 'TOP'),
        ('TOPPADDING', (0, 0), (-1, -1), 3),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 3),
        ('LINEBELOW', (0, 0), (-1, 0), 1, colors.HexColor('#334155')),
        ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor('#f1f5f9')),
        ('ROWBACKGROUNDS', (0, 1), (-1, -2), [colors.white, colors.HexColor('#fafafa')]),
        ('LINEABOVE', (0, -1), (-1, -1), 1, colors.HexColor('#1e3a8a')),
    ]
    if is_credit:
        style_cmds.append(('TEXTCOLOR', (1, 1), (1, -1), colors.HexColor('#dc2626')))
    detail_table.setStyle(TableStyle(style_cmds))
    story.append(detail_table)

    if invoice.status == InvoiceStatus.VOIDED:
        story.append(Spacer(1, 10))
        story.append(Paragraph(
            f"<font color='#dc2626'><b>VOID</b></font> since {invoice.voided_at:%Y-%m-%d}",
            styles['Normal'],
        ))
    if invoice.notes:
        story.append(Spacer(1, 10))
        story.append(Paragraph(escape(invoice.notes).replace("\n", "<br/>"), styles['Normal']))

    story.append(Spacer(1, 16))
    story.append(HRFlowable(width="100%", thickness=0.5, color=colors.HexColor('#cbd5e1')))
    story.append(Spacer(1, 4))
    story.append(Paragraph(
        f"Generated on {utcnow().strftime('%B %d, %Y at %I:%M %p UTC')} by {settings.PLATFORM_NAME}",
        styles['SmallRight'],
    ))

    doc.build(story)
    return buffer.getvalue()
