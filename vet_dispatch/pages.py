"""
pages.py
========
Confirmation pages shown after a vet clicks an accept / decline link.
One page per result code; none of them is an error page.
"""

from html import escape
from typing import Optional

from .claims import ResponseCode

# code -> (title, accent color, icon)
PAGE_STYLES = {
    ResponseCode.assigned: ("Case Accepted Successfully", "#10b981", "✔"),
    ResponseCode.declined: ("Thank You", "#6366f1", "ℹ"),
    ResponseCode.already_accepted: ("Case Already Accepted", "#10b981", "✔"),
    ResponseCode.already_declined: ("Response Already Noted", "#6366f1", "ℹ"),
    ResponseCode.already_lost: ("Case No Longer Available", "#9ca3af", "ℹ"),
    ResponseCode.case_already_assigned: ("Case Already Assigned", "#fbbf24", "⚠"),
    ResponseCode.invalid_link: ("Link Not Valid", "#ef4444", "✖"),
}


def _message(code: ResponseCode, vet_name: Optional[str], assigned_vet_name: Optional[str]) -> str:
    doctor = f"Dr. {escape(vet_name)}" if vet_name else "Doctor"
    taken_by = f"Dr. {escape(assigned_vet_name)}" if assigned_vet_name else "another doctor"

    if code == ResponseCode.assigned:
        return (
            f"Thank you, <strong>{doctor}</strong>! Patient details and the History Form "
            "link have been sent to your email. Please start with the History Form."
        )
    if code == ResponseCode.declined:
        return "We've noted that you're not available for this case. We'll notify you of future cases in your area."
    if code == ResponseCode.already_accepted:
        return "You have already accepted this case. Check your email for the patient details."
    if code == ResponseCode.already_declined:
        return "You already told us you're not available for this case."
    if code == ResponseCode.already_lost:
        return "This case is no longer available. Thank you for your interest."
    if code == ResponseCode.case_already_assigned:
        if assigned_vet_name:
            return f"This case has already been accepted by {taken_by}. Thank you for your interest in this case."
        return "This case is no longer available. Thank you for your interest in this case."
    return "This link is not valid. Please use the buttons from the most recent email we sent you."


def render_result_page(
    code: ResponseCode,
    vet_name: Optional[str] = None,
    assigned_vet_name: Optional[str] = None,
) -> str:
    title, color, icon = PAGE_STYLES[code]
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{title}</title>
</head>
<body style="margin: 0; padding: 0; font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif; background: #f3f4f6; min-height: 100vh; display: flex; align-items: center; justify-content: center;">
  <div style="background: white; padding: 40px; border-radius: 12px; box-shadow: 0 10px 40px rgba(0,0,0,0.2); max-width: 500px; margin: 20px; text-align: center;" data-result="{code.value}">
    <div style="background: {color}; width: 80px; height: 80px; border-radius: 50%; display: flex; align-items: center; justify-content: center; margin: 0 auto 24px; font-size: 40px;">
      <span style="color: white;">{icon}</span>
    </div>
    <h2 style="color: #1f2937; margin: 0 0 16px 0; font-size: 24px;">{title}</h2>
    <p style="color: #6b7280; line-height: 1.6; margin: 0; font-size: 16px;">{_message(code, vet_name, assigned_vet_name)}</p>
  </div>
</body>
</html>"""
