#!/usr/bin/env python3
from __future__ import annotations

import importlib
import json
import os
import sys
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient


@dataclass
class Turn:
  name: str
  message: str
  expected_intent: str
  expected_statuses: list[str] = field(default_factory=list)
  expected_change: tuple[str, str] | None = None


def parse_sse_events(payload_text: str) -> list[dict[str, Any]]:
  events: list[dict[str, Any]] = []
  current: dict[str, Any] = {}
  for raw_line in payload_text.splitlines():
    line = raw_line.strip("\r")
    if line.startswith("event: "):
      current["event"] = line[7:]
    elif line.startswith("data: "):
      current["data"] = line[6:]
    elif line == "" and current:
      events.append(current)
      current = {}
  if current:
    events.append(current)
  return events


def event_payloads(events: list[dict[str, Any]], event_name: str) -> list[Any]:
  payloads: list[Any] = []
  for event in events:
    if event.get("event") != event_name:
      continue
    raw = event.get("data")
    try:
      payloads.append(json.loads(raw) if isinstance(raw, str) else raw)
    except json.JSONDecodeError:
      payloads.append(raw)
  return payloads


def run() -> int:
  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  # Smoke runs against a throwaway database unless one is given explicitly.
  scratch = tempfile.mkdtemp(prefix="symptrack-smoke-")
  os.environ.setdefault("SYMPTRACK_DB_PATH", str(Path(scratch) / "smoke.sqlite"))

  backend_module = importlib.import_module("main")
  backend_module = importlib.reload(backend_module)

  headers = {"Authorization": f"Bearer smoke-user-{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}"}

  turns = [
    Turn(
      name="First symptom report",
      message="I've had a throbbing headache since yesterday, about 6/10, mostly behind my eyes.",
      expected_intent="symptom_tracking",
      expected_statuses=["processing", "symptom-gathering", "symptom-added", "completed"],
      expected_change=("episode", "created"),
    ),
    Turn(
      name="Follow-up detail",
      message="The headache is worse in the morning and gets worse when I look at screens.",
      expected_intent="symptom_tracking",
      expected_statuses=["symptom-updated"],
      expected_change=("episode", "updated"),
    ),
    Turn(
      name="Second symptom and a denial",
      message="I also feel nauseous. No fever though.",
      expected_intent="symptom_tracking",
      expected_statuses=["symptom-added"],
      expected_change=("episode", "created"),
    ),
    Turn(
      name="Assessment request",
      message="Can you give me an assessment?",
      expected_intent="assessment",
      expected_statuses=["assessment-generating", "assessment-analyzing", "assessment-created", "assessment-complete"],
      expected_change=("assessment", "created"),
    ),
  ]

  results: list[dict[str, Any]] = []
  conversation_id: str | None = None

  with TestClient(backend_module.app) as client:
    for turn in turns:
      body: dict[str, Any] = {"message": turn.message}
      if conversation_id:
        body["conversation_id"] = conversation_id
      response = client.post("/chat/stream", headers=headers, json=body)

      turn_result: dict[str, Any] = {
        "name": turn.name,
        "expected_intent": turn.expected_intent,
        "status_code": response.status_code,
      }
      if response.status_code != 200:
        turn_result["pass"] = False
        turn_result["error"] = f"/chat/stream returned {response.status_code}"
        results.append(turn_result)
        continue

      events = parse_sse_events(response.text)
      errors = event_payloads(events, "error")
      if errors:
        turn_result["pass"] = False
        turn_result["error"] = f"error event: {errors[0]}"
        results.append(turn_result)
        continue

      statuses = [item.get("type") for item in event_payloads(events, "status") if isinstance(item, dict)]
      messages = event_payloads(events, "message")
      change_batches = event_payloads(events, "changes")
      message = messages[0] if messages and isinstance(messages[0], dict) else {}
      changes = change_batches[0].get("items", []) if change_batches and isinstance(change_batches[0], dict) else []
      conversation_id = message.get("conversation_id") or conversation_id

      turn_result["statuses"] = statuses
      turn_result["changes"] = changes
      turn_result["phase"] = message.get("phase")
      turn_result["reply_preview"] = str(message.get("text") or "")[:240]

      missing = [status for status in turn.expected_statuses if status not in statuses]
      change_seen = turn.expected_change is None or any(
        (item.get("entity_type"), item.get("action")) == turn.expected_change for item in changes
      )
      turn_result["pass"] = not missing and change_seen
      if missing:
        turn_result["error"] = f"Missing status updates: {missing}"
      elif not change_seen:
        turn_result["error"] = f"Expected change {turn.expected_change} not reported"
      results.append(turn_result)

    history = client.get(f"/conversations/{conversation_id}/messages", headers=headers) if conversation_id else None
    stored_messages = len(history.json().get("items", [])) if history is not None and history.status_code == 200 else 0

  passed = sum(1 for item in results if item.get("pass"))
  failed = len(results) - passed
  timestamp = datetime.now(timezone.utc).isoformat()

  report_lines = [
    "# Chatbot E2E Smoke Report",
    "",
    f"- Timestamp (UTC): `{timestamp}`",
    f"- SYMPTRACK_DB_PATH: `{os.getenv('SYMPTRACK_DB_PATH')}`",
    f"- Text generation configured: `{bool(os.getenv('OPENAI_API_KEY'))}`",
    f"- Total turns: `{len(results)}`",
    f"- Passed: `{passed}`",
    f"- Failed: `{failed}`",
    f"- Messages stored for the conversation: `{stored_messages}`",
    "",
    "## Turn Results",
    "",
  ]

  for item in results:
    status = "PASS" if item.get("pass") else "FAIL"
    report_lines.append(f"### {status} - {item['name']}")
    report_lines.append(f"- Status code: `{item.get('status_code')}`")
    report_lines.append(f"- Phase after turn: `{item.get('phase')}`")
    report_lines.append(f"- Status updates: `{', '.join(item.get('statuses') or [])}`")
    if item.get("error"):
      report_lines.append(f"- Error: `{item['error']}`")
    preview = item.get("reply_preview") or ""
    if preview:
      report_lines.append(f"- Reply preview: `{preview}`")
    report_lines.append("- Explicit changes:")
    report_lines.append("```json")
    report_lines.append(json.dumps(item.get("changes"), indent=2, ensure_ascii=True))
    report_lines.append("```")
    report_lines.append("")

  report_path = repo_root / "CHATBOT_E2E_SMOKE_REPORT.md"
  report_path.write_text("\n".join(report_lines), encoding="utf-8")
  print(f"Wrote report: {report_path}")
  print(f"Passed {passed}/{len(results)} turns.")

  return 0 if failed == 0 and stored_messages == 2 * len(turns) else 1


if __name__ == "__main__":
  raise SystemExit(run())
