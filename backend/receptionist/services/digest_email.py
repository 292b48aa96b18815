"""Rendering of the daily call digest email."""
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from jinja2 import Environment, BaseLoader

from .clock import parse_timestamp

DIGEST_TEMPLATE = """
<div style="font-family: Arial, sans-serif; color: #111; line-height: 1.5;">
  <h2 style="margin-bottom: 4px;">Daily Call Digest</h2>
  <p style="margin: 0;"><strong>{{ business_name }}</strong></p>
  <p style="margin-top: 4px;">Date: {{ label }} ({{ timezone }})</p>
  <hr />
  <table style="width: 100%; margin-bottom: 16px;">
    <tr>
      <td style="background: #f8f8f8; padding: 10px;">
        <div style="font-size: 12px; color: #666;">Total Calls</div>
        <div style="font-size: 20px; font-weight: 700;">{{ stats.total }}</div>
      </td>
      <td style="background: #f8f8f8; padding: 10px;">
        <div style="font-size: 12px; color: #666;">Missed Calls</div>
        <div style="font-size: 20px; font-weight: 700;">{{ stats.missed }}</div>
      </td>
      <td style="background: #f8f8f8; padding: 10px;">
        <div style="font-size: 12px; color: #666;">Top Intents</div>
        <div style="font-size: 14px; font-weight: 600;">{{ top_intents or "None" }}</div>
      </td>
    </tr>
  </table>
  <h3 style="margin-bottom: 8px;">Key calls</h3>
  <table style="width: 100%; border-collapse: collapse; font-size: 13px;">
    <thead>
      <tr style="text-align: left; background: #fafafa;">
        <th style="padding: 8px; border-bottom: 1px solid #eee;">Time</th>
        <th style="padding: 8px; border-bottom: 1px solid #eee;">Caller</th>
        <th style="padding: 8px; border-bottom: 1px solid #eee;">Status</th>
        <th style="padding: 8px; border-bottom: 1px solid #eee;">Summary</th>
      </tr>
    </thead>
    <tbody>
    {% for call in key_calls %}
      <tr>
        <td style="padding: 8px; border-bottom: 1px solid #eee;">{{ call.time }}</td>
        <td style="padding: 8px; border-bottom: 1px solid #eee;">{{ call.caller }}</td>
        <td style="padding: 8px; border-bottom: 1px solid #eee;">{{ call.status }}</td>
        <td style="padding: 8px; border-bottom: 1px solid #eee;">{{ call.summary }}</td>
      </tr>
    {% else %}
      <tr>
        <td colspan="4" style="padding: 8px; text-align: center; color: #666;">No calls recorded.</td>
      </tr>
    {% endfor %}
    </tbody>
  </table>
  {% if dashboard_url %}<p style="margin-top: 16px;"><a href="{{ dashboard_url }}">Open dashboard</a></p>{% endif %}
</div>
"""

_env = Environment(loader=BaseLoader(), autoescape=True)
_template = _env.from_string(DIGEST_TEMPLATE)

KEY_CALL_LIMIT = 5
TOP_INTENT_LIMIT = 5


def format_call_time(value: Any, tz_name: str) -> str:
    dt = parse_timestamp(value)
    if dt is None:
        return "unknown"
    local = dt.astimezone(ZoneInfo(tz_name))
    suffix = "AM" if local.hour < 12 else "PM"
    return f"{local.strftime('%b')} {local.day}, {local.hour % 12 or 12}:{local.minute:02d} {suffix}"


def top_intents(intents: Dict[str, int], limit: int = TOP_INTENT_LIMIT) -> str:
    ranked = sorted(intents.items(), key=lambda item: (-item[1], item[0]))[:limit]
    return ", ".join(f"{intent}: {count}" for intent, count in ranked)


def key_call_rows(calls: List[Dict[str, Any]], tz_name: str) -> List[Dict[str, str]]:
    rows = []
    for call in calls[:KEY_CALL_LIMIT]:
        summary = call.get("summary")
        rows.append({
            "time": format_call_time(call.get("created_at"), tz_name),
            "caller": call.get("from_phone") or call.get("customer_phone") or "unknown",
            "status": call.get("status") or "unknown",
            "summary": summary[:140] if summary else "No summary",
        })
    return rows


def render_digest_email(
    business: Dict[str, Any],
    recipient: str,
    tz_name: str,
    label: str,
    calls: List[Dict[str, Any]],
    stats: Dict[str, Any],
    dashboard_url: Optional[str] = None,
) -> Dict[str, str]:
    name = business.get("name") or "Your business"
    intents_line = top_intents(stats.get("intents") or {})
    rows = key_call_rows(calls, tz_name)

    text_lines = [
        f"Daily Call Digest for {name}",
        f"Date: {label} ({tz_name})",
        "",
        f"Total calls: {stats['total']}",
        f"Missed calls: {stats['missed']}",
        f"Top intents: {intents_line or 'None'}",
        "",
        "Key calls:",
    ]
    if rows:
        text_lines.extend(f"{r['time']} | {r['caller']} | {r['status']} | {r['summary']}" for r in rows)
    else:
        text_lines.append("No calls recorded.")
    if dashboard_url:
        text_lines.extend(["", f"Dashboard: {dashboard_url}"])

    html = _template.render(
        business_name=name,
        label=label,
        timezone=tz_name,
        stats=stats,
        top_intents=intents_line,
        key_calls=rows,
        dashboard_url=dashboard_url,
    )
    return {
        "to": recipient,
        "subject": f"Daily Call Digest - {name} ({label})",
        "html": html,
        "text": "\n".join(text_lines),
    }
