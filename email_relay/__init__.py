"""
Email Command Relay

Lets an operator drive a long-running assistant session by replying to
notification emails:
- Watches the inbox over IMAP (IDLE push with a polling backstop)
- Accepts replies only from allow-listed senders carrying a session token
- Extracts a clean command from the quoted reply body
- Injects it into the matching tmux session and answers confirmation prompts
- Falls back to keystroke automation, then clipboard + notification
"""

__version__ = "1.0.0"
