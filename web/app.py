"""Sample web application deployed to each staging instance.

Shows which pull request and branch the instance is serving, and exposes
the /up health check used after every deploy.
"""
import os
from datetime import datetime, timezone

from flask import Flask, jsonify, render_template_string

app = Flask(__name__)

STARTED_AT = datetime.now(timezone.utc)

TEMPLATE = """<!DOCTYPE html>
<html>
<head><title>{{ title }}</title></head>
<body>
<h1>{{ title }}</h1>
{% if pr_number %}
<p>Deployed from PR <strong>#{{ pr_number }}</strong>
{% if branch %}(branch <code>{{ branch }}</code>){% endif %}</p>
{% else %}
<p><em>Not a pull request deployment</em></p>
{% endif %}
<p><small>Up since {{ started_at }}</small></p>
</body>
</html>"""


def deployment_info():
    return {
        "pr_number": os.environ.get("STAGING_PR_NUMBER", ""),
        "branch": os.environ.get("STAGING_BRANCH", ""),
        "started_at": STARTED_AT.strftime("%Y-%m-%d %H:%M:%S UTC"),
    }


@app.route("/up")
def health():
    """Health check endpoint polled after each deploy."""
    return "OK", 200


@app.route("/")
def index():
    info = deployment_info()
    title = f"Staging PR #{info['pr_number']}" if info["pr_number"] else "Staging"
    return render_template_string(TEMPLATE, title=title, **info)


@app.route("/deployment.json")
def deployment():
    return jsonify(deployment_info())


if __name__ == "__main__":
    app.run(host="127.0.0.1", port=int(os.environ.get("PORT", "3000")))
