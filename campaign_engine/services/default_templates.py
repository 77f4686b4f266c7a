"""Built-in content for the self-healing default sequence.

One immediate SMS followed by three emails at 24h, 5 days and 14 days.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

DEFAULT_SEQUENCE_NAME = "Default Review Collection"
DEFAULT_SEQUENCE_DESCRIPTION = "1 SMS + 3 email follow-up sequence for review collection"


@dataclass(frozen=True)
class DefaultStep:
    step_number: int
    delay_hours: int
    channel: str
    subject_template: Optional[str]
    body_template: str


_SMS_BODY = (
    "Hi {{customerName}}! How was your experience with {{businessName}}? "
    "We'd love to hear about it: {{reviewLink}}"
)

_PROFESSIONAL_BODY = """<!DOCTYPE html>
<html>
<head><meta charset="UTF-8"><title>Share Your Experience</title></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
  <div style="max-width: 600px; margin: 0 auto; padding: 20px;">
    <h2 style="color: #2c5aa0;">Thank you for choosing {{businessName}}!</h2>
    <p>Hi {{customerName}},</p>
    <p>We hope you're happy with your recent {{serviceType}}. Your feedback helps us and helps
    other customers find us.</p>
    <p style="text-align: center; margin: 30px 0;">
      <a href="{{reviewLink}}" style="background-color: #2c5aa0; color: #fff; padding: 15px 30px;
         text-decoration: none; border-radius: 5px;">Share Your Experience</a>
    </p>
    <p>Best regards,<br>The {{businessName}} Team</p>
    <p style="font-size: 12px; color: #666;">{{businessName}}<br>{{businessPhone}}<br>{{businessWebsite}}</p>
  </div>
</body>
</html>
"""

_PLAIN_BODY = """Hi {{customerName}},

I hope you were happy with your recent {{serviceType}} from {{businessName}}.

Would you mind taking 30 seconds to share your experience?
{{reviewLink}}

Thanks so much!
{{businessName}}
{{businessPhone}}
"""

_FINAL_BODY = """Hi {{customerName}},

This is my last note about your recent {{serviceType}}.

If you were satisfied with our work, a quick review would mean a lot:
{{reviewLink}}

If anything wasn't right, just reply to this email and we'll make it right.

Thank you,
{{businessName}}
"""


def default_steps() -> List[DefaultStep]:
    return [
        DefaultStep(1, 0, "SMS", None, _SMS_BODY),
        DefaultStep(2, 24, "EMAIL_PROFESSIONAL", "How was your {{serviceType}} experience?", _PROFESSIONAL_BODY),
        DefaultStep(3, 120, "EMAIL_PLAIN", "Quick favor?", _PLAIN_BODY),
        DefaultStep(4, 336, "EMAIL_PLAIN", "Last chance to share your experience", _FINAL_BODY),
    ]
