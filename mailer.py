import logging
import smtplib
from html import escape
from email.message import EmailMessage
from typing import Optional

from fastapi.concurrency import run_in_threadpool

import config

logger = logging.getLogger(__name__)


class MailerNotConfigured(RuntimeError):
    pass


class Mailer:
    def __init__(self, host: str, port: int, user: str, password: str):
        self.host = host
        self.port = port
        self.user = user
        self.password = password

    def _send(self, to: str, subject: str, html: str, reply_to: Optional[str] = None):
        if not self.user or not self.password:
            raise MailerNotConfigured("EMAIL_USER and EMAIL_PASS must be set to send email")
        msg = EmailMessage()
        msg["From"] = self.user
        msg["To"] = to
        msg["Subject"] = subject
        if reply_to:
            msg["Reply-To"] = reply_to
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(html, subtype="html")
        with smtplib.SMTP_SSL(self.host, self.port, timeout=30) as smtp:
            smtp.login(self.user, self.password)
            smtp.send_message(msg)

    async def send(self, to: str, subject: str, html: str, reply_to: Optional[str] = None):
        await run_in_threadpool(self._send, to, subject, html, reply_to)
        logger.info("Email sent to %s", to)

    async def send_verification_email(self, email: str, link: str):
        html = f"""
        <h2>Welcome!</h2>
        <p>Please click the link below to verify your email:</p>
        <a href="{link}">Verify Email</a>
        <p>If you did not request this, please ignore this email.</p>
        """
        await self.send(email, "Verify Your Email", html)

    async def send_password_reset_email(self, email: str, link: str):
        html = f"""
        <h2>Password reset</h2>
        <p>Use the link below to choose a new password. It expires in
        {config.PASSWORD_RESET_EXPIRE_MINUTES} minutes.</p>
        <a href="{link}">Reset Password</a>
        """
        await self.send(email, "Reset Your Password", html)

    async def send_contact_message(self, name: str, email: str, subject: str, message: str):
        html = f"""
        <h2>New Contact Form Submission</h2>
        <p><strong>Name:</strong> {escape(name)}</p>
        <p><strong>Email:</strong> {escape(email)}</p>
        <p><strong>Subject:</strong> {escape(subject)}</p>
        <p><strong>Message:</strong> {escape(message)}</p>
        """
        await self.send(config.CONTACT_RECIPIENT, f"Contact Form: {subject}", html, reply_to=email)


def get_mailer() -> Mailer:
    return Mailer(config.EMAIL_HOST, config.EMAIL_PORT, config.EMAIL_USER, config.EMAIL_PASS)
