import logging
import smtplib
from email.message import EmailMessage

from config import settings

logger = logging.getLogger(__name__)

OTP_TTL_MINUTES = 10

_HTML = """\
<!DOCTYPE html>
<html>
  <body style="margin:0;padding:40px 0;background:#f4f4f5;font-family:Arial,sans-serif;">
    <table width="480" align="center" cellpadding="0" cellspacing="0" style="background:#ffffff;border-radius:12px;">
      <tr>
        <td style="background:#6366f1;padding:32px 40px;text-align:center;">
          <h1 style="margin:0;color:#ffffff;font-size:24px;">Devlink</h1>
          <p style="margin:8px 0 0;color:#e0e7ff;font-size:14px;">Verify your email address</p>
        </td>
      </tr>
      <tr>
        <td style="padding:40px;color:#374151;font-size:15px;line-height:1.6;">
          <p>Use the code below to complete your Devlink registration. It expires in <strong>{minutes} minutes</strong>.</p>
          <p style="font-size:40px;font-weight:700;letter-spacing:10px;color:#4f46e5;text-align:center;">{otp}</p>
          <p style="color:#9ca3af;font-size:13px;">If you did not request this code, you can ignore this email.</p>
        </td>
      </tr>
    </table>
  </body>
</html>
"""


class MailerError(RuntimeError):
    pass


def build_verification_email(email: str, otp: str) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = "Your Devlink verification code"
    msg["From"] = settings.smtp_from
    msg["To"] = email
    msg.set_content(
        f"Your Devlink verification code is {otp}. It expires in {OTP_TTL_MINUTES} minutes.\n"
        "If you did not request this code, you can ignore this email."
    )
    msg.add_alternative(_HTML.format(otp=otp, minutes=OTP_TTL_MINUTES), subtype="html")
    return msg


def send_verification_email(email: str, otp: str) -> None:
    if not settings.smtp_host:
        raise MailerError("SMTP is not configured")
    msg = build_verification_email(email, otp)
    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=15) as smtp:
            smtp.starttls()
            if settings.smtp_user:
                smtp.login(settings.smtp_user, settings.smtp_pass)
            smtp.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:
        raise MailerError(str(exc)) from exc
    logger.info("Verification code sent to %s", email)
