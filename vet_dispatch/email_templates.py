"""
email_templates.py
==================
Subject, HTML and plain text for every message the dispatcher sends.

Phase 1 (initial notification) carries limited info only: no owner phone
or address. The full details go to the winning vet alone.
"""

from dataclasses import dataclass
from html import escape
from typing import Optional

THEME = {
    "primary": "#22c55e",
    "muted": "#6c757d",
    "danger": "#ff4444",
    "background": "#f9f9f9",
    "border": "#dddddd",
    "text": "#333333",
}

CONSULTATION_LABELS = {
    "physical": "🏥 Physical Visit",
    "virtual": "💻 Virtual Consultation",
    "subsidized": "🤝 Free Consultation (Subsidized)",
}


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    html: str
    text: str


def _consultation_label(case) -> str:
    kind = getattr(case.consultation_kind, "value", case.consultation_kind)
    return CONSULTATION_LABELS.get(kind, "📋 Consultation")


def _wrap(title: str, body: str, header_color: str = THEME["primary"], banner: str = "") -> str:
    """Base HTML layout shared by every message."""
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="UTF-8">
  <style>
    body {{ font-family: Arial, sans-serif; line-height: 1.6; color: {THEME['text']}; }}
    .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
    .header {{ background: {header_color}; color: white; padding: 20px; border-radius: 10px 10px 0 0; }}
    .content {{ background: {THEME['background']}; padding: 20px; border: 1px solid {THEME['border']}; }}
    .info-box {{ background: white; padding: 15px; margin: 10px 0; border-radius: 5px; border-left: 4px solid {header_color}; }}
    .button {{ display: inline-block; padding: 12px 30px; margin: 10px 5px; text-decoration: none; border-radius: 5px; font-weight: bold; color: white; }}
  </style>
</head>
<body>
  <div class="container">
    {banner}
    <div class="header"><h2>{title}</h2></div>
    <div class="content">
{body}
    </div>
  </div>
</body>
</html>"""


def initial_notification(vet_name: str, case, accept_link: str, decline_link: str) -> RenderedMessage:
    """New case broadcast with accept / decline buttons."""
    consultation = _consultation_label(case)
    banner = ""
    if case.is_emergency:
        banner = (
            f'<div style="background: {THEME["danger"]}; color: white; padding: 10px; '
            f'text-align: center; font-weight: bold;">⚠️ EMERGENCY CASE ⚠️</div>'
        )

    body = f"""
      <p>Dear Dr. {escape(vet_name)},</p>
      <p>A new veterinary case is available in <strong>{escape(case.city)}</strong>.</p>
      <div class="info-box">
        <h3 style="margin-top: 0;">🐾 Case Summary</h3>
        <strong>Animal:</strong> {escape(case.species)}<br>
        <strong>Issue:</strong> {escape(case.description or '')}<br>
        <strong>City:</strong> {escape(case.city)}<br>
        <strong>Type:</strong> {consultation}<br>
      </div>
      <div style="text-align: center; margin: 30px 0; padding: 20px; background: #e8f5e9; border-radius: 10px;">
        <h3>Are you available for this case?</h3>
        <a href="{escape(accept_link)}" class="button" style="background: {THEME['primary']};">✓ YES, I'M AVAILABLE</a>
        <a href="{escape(decline_link)}" class="button" style="background: #666;">✗ NOT AVAILABLE</a>
      </div>
      <p style="text-align: center; color: #666;"><small>First doctor to accept will receive full patient details and contact information</small></p>"""

    prefix = "🚨 URGENT: " if case.is_emergency else ""
    return RenderedMessage(
        subject=f"{prefix}New Case - {case.species} in {case.city}",
        html=_wrap("New Veterinary Case Available", body, banner=banner),
        text=(
            f"New case available: {case.species} with {case.description or 'no description'} "
            f"in {case.city}.\nAccept: {accept_link}\nDecline: {decline_link}"
        ),
    )


def acceptance_confirmation(vet_name: str, case, history_form_link: str) -> RenderedMessage:
    """Full details for the vet who won the case."""
    owner_contact = case.owner_phone or case.owner_email or "not provided"
    address_line = ""
    if case.address:
        address_line = f"<strong>Address:</strong> {escape(case.address)}<br>"
    city = escape(case.city) + (f", {escape(case.state)}" if case.state else "")
    emergency_line = '<strong style="color: red;">⚠️ EMERGENCY CASE</strong><br>' if case.is_emergency else ""

    body = f"""
      <p>Dear Dr. {escape(vet_name)},</p>
      <p>Thank you for accepting this case. Full details are below.</p>
      <div class="info-box">
        <h3 style="margin-top: 0;">👤 Owner</h3>
        <strong>Name:</strong> {escape(case.owner_name or 'not provided')}<br>
        <strong>Contact:</strong> {escape(owner_contact)}<br>
        {address_line}
        <strong>City:</strong> {city}<br>
      </div>
      <div class="info-box">
        <h3 style="margin-top: 0;">🐾 Case</h3>
        <strong>Animal:</strong> {escape(case.species)}<br>
        <strong>Issue:</strong> {escape(case.description or '')}<br>
        <strong>Type:</strong> {_consultation_label(case)}<br>
        {emergency_line}
      </div>
      <div style="text-align: center; margin: 30px 0;">
        <a href="{escape(history_form_link)}" class="button" style="background: #3b82f6;">📝 Fill History Form</a>
      </div>
      <p style="color: #666;">The Prescription Form link will be sent after you complete the history form.</p>"""

    return RenderedMessage(
        subject=f"✅ Case Assigned - {case.species} - Contact: {owner_contact}",
        html=_wrap("Case Assigned To You", body),
        text=(
            f"Case assigned. Owner contact: {owner_contact}. "
            f"Please fill the History Form: {history_form_link}. "
            "The Prescription Form link will be sent after you complete the history form."
        ),
    )


def case_taken(vet_name: str, case, accepted_by: Optional[str]) -> RenderedMessage:
    """Terse notice for every vet who did not win."""
    winner = f"Dr. {accepted_by}" if accepted_by else "another doctor"
    body = f"""
      <p>Dear Dr. {escape(vet_name)},</p>
      <p>The case for <strong>{escape(case.species)}</strong> in <strong>{escape(case.city)}</strong> has been accepted by <strong>{escape(winner)}</strong>.</p>
      <p>Thank you for your availability. We'll notify you of future cases in your area.</p>"""

    return RenderedMessage(
        subject=f"Case Taken - {case.species} in {case.city}",
        html=_wrap("Case Already Assigned", body, header_color=THEME["muted"]),
        text=f"The case has been accepted by {winner}. Thank you for your availability.",
    )


def owner_assignment(case, vet_name: str, vet_phone: Optional[str]) -> RenderedMessage:
    """Tells the animal owner which vet picked up the request."""
    phone_line = f"<strong>Phone:</strong> {escape(vet_phone)}<br>" if vet_phone else ""
    body = f"""
      <p>Dear {escape(case.owner_name or 'Customer')},</p>
      <p>Good news! A veterinarian has accepted your request for your <strong>{escape(case.species)}</strong>.</p>
      <div class="info-box">
        <strong>Veterinarian:</strong> Dr. {escape(vet_name)}<br>
        {phone_line}
        <strong>Consultation:</strong> {_consultation_label(case)}<br>
      </div>
      <p>The doctor will contact you shortly.</p>"""

    return RenderedMessage(
        subject=f"🩺 Veterinarian Assigned - Dr. {vet_name} will contact you soon!",
        html=_wrap("Veterinarian Assigned", body),
        text=f"Dr. {vet_name} has accepted your request for your {case.species} and will contact you soon.",
    )


def operator_escalation(case, reason: str, case_link: str) -> RenderedMessage:
    """Operator alert for a case nobody took."""
    body = f"""
      <p>Case #{case.id} ({escape(case.species)} in {escape(case.city)}) needs manual attention.</p>
      <div class="info-box">
        <strong>Reason:</strong> {escape(reason)}<br>
        <strong>Emergency:</strong> {'yes' if case.is_emergency else 'no'}<br>
        <strong>Owner contact:</strong> {escape(case.owner_phone or case.owner_email or 'not provided')}<br>
      </div>
      <p><a href="{escape(case_link)}">Open case</a></p>"""

    return RenderedMessage(
        subject=f"⚠️ Unassigned Case #{case.id} - {case.species} in {case.city}",
        html=_wrap("Case Needs Attention", body, header_color=THEME["danger"]),
        text=f"Case #{case.id} ({case.species} in {case.city}) was not assigned: {reason}. {case_link}",
    )
