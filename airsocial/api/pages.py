"""Server-rendered pages reached from links in transactional emails."""

from __future__ import annotations

import html

_PAGE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>{title}</title>
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background: #f5f8fa; color: #1f2933; }}
        .card {{ max-width: 420px; margin: 80px auto; background: white; padding: 32px; border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,0.08); }}
        .ok {{ color: #15803d; }}
        .fail {{ color: #b91c1c; }}
        input {{ width: 100%; padding: 10px; margin: 8px 0 16px; box-sizing: border-box; }}
        button {{ background: #1d9bf0; color: white; border: 0; padding: 12px 24px; border-radius: 8px; font-weight: 600; cursor: pointer; }}
    </style>
</head>
<body>
    <div class="card">
{content}
    </div>
</body>
</html>
"""


def _render(title: str, content: str) -> str:
    return _PAGE.format(title=html.escape(title), content=content)


def verification_page(success: bool, app_name: str = "Air Social") -> str:
    if success:
        content = (
            '        <h1 class="ok">Email verified</h1>\n'
            f"        <p>Your email address has been verified. You can now sign in to {html.escape(app_name)}.</p>"
        )
    else:
        content = (
            '        <h1 class="fail">Verification failed</h1>\n'
            "        <p>This verification link is invalid or has expired. Request a new verification email and try again.</p>"
        )
    return _render("Email verification", content)


_RESET_FORM = """        <h1>Choose a new password</h1>
        <form id="reset-form">
            <input type="hidden" name="token" value="{token}">
            <label for="password">New password</label>
            <input type="password" id="password" name="password" maxlength="64" required>
            <button type="submit">Reset password</button>
        </form>
        <p id="result"></p>
        <script>
            document.getElementById("reset-form").addEventListener("submit", async (event) => {{
                event.preventDefault();
                const form = event.target;
                const resp = await fetch("{action}", {{
                    method: "POST",
                    headers: {{"Content-Type": "application/json"}},
                    body: JSON.stringify({{token: form.token.value, password: form.password.value}}),
                }});
                const body = await resp.json();
                document.getElementById("result").textContent =
                    resp.ok ? "Your password has been updated." : (body.error && body.error.message) || "Reset failed.";
            }});
        </script>"""


def reset_password_page(valid: bool, *, token: str = "", action: str = "") -> str:
    if not valid:
        content = (
            '        <h1 class="fail">Link expired</h1>\n'
            "        <p>This password reset link is invalid or has expired. Request a new one from the sign-in page.</p>"
        )
        return _render("Reset password", content)
    content = _RESET_FORM.format(
        token=html.escape(token, quote=True), action=html.escape(action, quote=True)
    )
    return _render("Reset password", content)
