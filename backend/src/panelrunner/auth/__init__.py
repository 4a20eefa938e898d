"""
Authentication for target panels.

Provides credential encryption, session cookie capture, captcha solving and
the login state machine.
"""

from panelrunner.auth.captcha import VisionCaptchaSolver
from panelrunner.auth.credential_cipher import CredentialCipher
from panelrunner.auth.login import LoginRequest, LoginStateMachine
from panelrunner.auth.session_capture import SessionCapture

__all__ = ["CredentialCipher", "LoginRequest", "LoginStateMachine", "SessionCapture", "VisionCaptchaSolver"]
