"""Markdown bodies for the comments posted on the pull request."""
import re

# GitHub rejects comment bodies over 65536 characters.
MAX_DETAIL_CHARS = 60000
MAX_ERROR_BLOCKS = 12


def strip_ansi(text: str) -> str:
    return re.sub(r"\x1B\[[0-9;]*[A-Za-z]", "", text)


def extract_terraform_error_blocks(text: str) -> list:
    # Terraform renders structured errors as:
    #   ╷
    #   │ Error: ...
    #   ╵
    blocks = []
    for m in re.finditer(r"(?:^|\n)\s*╷\n[\s\S]*?\n\s*╵(?=\n|$)", text):
        blocks.append(m.group(0).strip("\n"))
    return blocks


def truncate(text: str, limit: int = MAX_DETAIL_CHARS) -> str:
    """Keep the tail, where terraform prints the summary and errors."""
    if len(text) <= limit:
        return text
    dropped = len(text) - limit
    return f"... ({dropped} characters truncated)\n{text[-limit:]}"


def _attribution(actor: str, event_name: str) -> str:
    return f"*Pusher: @{actor}, Action: `{event_name}`*"


def plan_comment(init_outcome: str, plan, actor: str, event_name: str) -> str:
    detail = truncate(strip_ansi(f"terraform\n{plan.detail}"))
    return (
        f"#### Terraform Initialization ⚙️`{init_outcome}`\n"
        f"#### Terraform Plan 📖`{plan.outcome}`\n"
        "\n"
        "<details><summary>Show Plan</summary>\n"
        "\n"
        "```\n"
        f"{detail}\n"
        "```\n"
        "\n"
        "</details>\n"
        "\n"
        f"{_attribution(actor, event_name)}"
    )


def deployed_comment(pr_number: int, address: str) -> str:
    return (
        "#### Staging server created\n"
        f"> PR #{pr_number} has been deployed successfully\n"
        "\n"
        f"URL: http://{address}"
    )


def failure_comment(pr_number: int, stage: str, detail: str,
                    actor: str, event_name: str) -> str:
    clean = strip_ansi(detail or "")
    blocks = extract_terraform_error_blocks(clean)
    lines = [
        "#### Staging deployment failed ❌",
        f"> PR #{pr_number} failed during `{stage}`",
        "",
    ]
    if blocks:
        lines.append(f"Found {len(blocks)} Terraform error block(s):")
        lines.append("")
        for b in blocks[:MAX_ERROR_BLOCKS]:
            lines += ["```text", b.strip(), "```", ""]
        if len(blocks) > MAX_ERROR_BLOCKS:
            lines.append(f"(truncated; {len(blocks) - MAX_ERROR_BLOCKS} more blocks)")
            lines.append("")
    elif clean.strip():
        tail = "\n".join(clean.strip().splitlines()[-200:])
        lines += [
            "<details><summary>Show details</summary>",
            "",
            "```text",
            truncate(tail),
            "```",
            "",
            "</details>",
            "",
        ]
    lines.append(_attribution(actor, event_name))
    return "\n".join(lines)


def destroyed_comment(pr_number: int) -> str:
    return (
        "#### Staging server destroyed\n"
        f"> The staging environment for PR #{pr_number} has been torn down"
    )
