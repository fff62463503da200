# subsync/notifications/email_templates.py
from datetime import datetime

from markupsafe import escape


class EmailTemplates:
    """Email template definitions"""

    @staticmethod
    def parental_consent(child_name, verification_url, support_email, ttl_hours=24):
        """Parental consent verification email. Returns (subject, html, text)."""
        subject = "Verify Your Parental Consent"
        safe_name = escape(child_name)
        safe_url = escape(verification_url)

        html = f"""
        <!DOCTYPE html>
        <html>
        <head>
            <meta charset="utf-8">
            <title>{subject}</title>
            <style>
                body {{ font-family: Arial, sans-serif; line-height: 1.6; }}
                .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
                .header {{ color: #2563eb; text-align: center; margin-bottom: 30px; }}
                .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; text-decoration: none; border-radius: 4px; }}
                .notice {{ background: #f8f9fa; padding: 15px; border-radius: 4px; margin: 20px 0; }}
                .footer {{ margin-top: 30px; padding-top: 20px; border-top: 1px solid #dee2e6; color: #6c757d; font-size: 12px; }}
            </style>
        </head>
        <body>
            <div class="container">
                <div class="header">
                    <h1>Verify Your Parental Consent</h1>
                </div>

                <p>Hello,</p>

                <p>You are receiving this email because someone is trying to create an account for your child, <strong>{safe_name}</strong>.</p>

                <p>To verify your parental consent and allow your child to use the app, please click the link below:</p>

                <p style="text-align: center; margin: 30px 0;">
                    <a href="{safe_url}" class="button">Verify Parental Consent</a>
                </p>

                <div class="notice">
                    <p><strong>Important:</strong></p>
                    <ul>
                        <li>This verification link will expire in {ttl_hours} hours</li>
                        <li>Only click this link if you are the parent or guardian of {safe_name}</li>
                        <li>If you did not request this verification, please ignore this email</li>
                    </ul>
                </div>

                <div class="footer">
                    <p>If you have any questions, please contact us at {escape(support_email)}</p>
                    <p>&copy; {datetime.now().year}. This is an automated message, please do not reply to this email.</p>
                </div>
            </div>
        </body>
        </html>
        """

        text = f"""{subject}

Hello,

You are receiving this email because someone is trying to create an account for your child, {child_name}.

To verify your parental consent and allow your child to use the app, please visit this link:

{verification_url}

Important:
- This verification link will expire in {ttl_hours} hours
- Only click this link if you are the parent or guardian of {child_name}
- If you did not request this verification, please ignore this email

If you have any questions, please contact us at {support_email}
"""

        return subject, html, text
