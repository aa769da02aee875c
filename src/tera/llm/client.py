"""Thin model client that requests plans in the tagged action format."""

from __future__ import annotations

import json
import logging
from urllib import request
from urllib.error import HTTPError, URLError

from tera.agent.errors import ModelRequestError
from tera.agent.models import Plan, PlanExecution
from tera.agent.parser import render_plan

LOGGER = logging.getLogger(__name__)

FORMAT_INSTRUCTIONS = "\n".join(
    [
        "Reply with a plan in this tagged format and nothing else:",
        "<analysis>what you found</analysis>",
        "<strategy>how you will proceed</strategy>",
        '<tools name="ACTION_KIND">',
        "  <description>one line describing the step</description>",
        '  <param name="path" value="relative/path" />',
        "  <content>file body, for create_file and modify_file</content>",
        "  <command>shell command, for run_command</command>",
        "  <message>text, for inform_user</message>",
        "</tools>",
        "<status>continue|complete</status>",
        "",
        "Action kinds:",
        "- create_file (path, content) creates parents as needed",
        "- modify_file (path, content) overwrites an existing file",
        "- patch_file (path, changes) with <changes><change action=\"replace\" line=\"N\">"
        "<old>text</old><new>text</new></change></changes>; actions are add, replace,"
        " delete, insert_after, insert_before; line numbers refer to the current file",
        "- run_command (command, optional cwd, optional timeout in ms); end with & to run"
        " a server in the background",
        "- create_directory (path)",
        "- list_directory (path)",
        "- read_file_lines (path, start_line, end_line)",
        "- analyze_file (path)",
        "- inform_user (message, optional type: info|success|warning|error|complete|tip)",
        "- chat (response)",
        "",
        "Read a file before patching it. Use status complete only when the task is done;",
        "a complete plan may still carry final actions.",
    ]
)


class LLMClient:
    """Small HTTP client for plan-oriented model calls."""

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        system_prompt: str,
        max_context_chars: int = 12000,
        reasoning_effort: str | None = None,
        api_url: str = "https://api.openai.com/v1/responses",
        timeout: float = 60.0,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.system_prompt = system_prompt
        self.max_context_chars = max_context_chars
        self.reasoning_effort = reasoning_effort
        self.api_url = api_url
        self.timeout = timeout

    def generate_plan(self, task: str, discovery_context: str | None = None) -> str:
        sections = [f"Task:\n{task}"]
        if discovery_context:
            sections.append(f"Environment:\n{discovery_context}")
        sections.append(FORMAT_INSTRUCTIONS)
        return self._request_text("\n\n".join(sections), purpose="plan")

    def evaluate(
        self,
        task: str,
        execution_results: list[PlanExecution],
        previous_plans: list[Plan],
    ) -> str:
        history = [self._serialize_execution(execution) for execution in execution_results]
        context_json = self._serialize_context_with_limit(
            history, max_context_chars=self.max_context_chars
        )
        last_plan = render_plan(previous_plans[-1]) if previous_plans else "(none)"
        message = "\n\n".join(
            [
                f"Task:\n{task}",
                f"Plans executed so far: {len(previous_plans)}",
                f"Execution results (oldest to newest):\n{context_json}",
                f"Most recent plan:\n{last_plan}",
                "Decide whether the task is complete. If it is, answer with"
                " <status>complete</status> and no actions. Otherwise propose the next"
                " actions. Do not repeat actions that already succeeded.",
                FORMAT_INSTRUCTIONS,
            ]
        )
        return self._request_text(message, purpose="evaluate")

    def generate_corrected_plan(
        self,
        task: str,
        prior_plan: str,
        completed_steps: list[str],
        error_message: str,
        classification: str,
        instructions: str | None = None,
    ) -> str:
        completed = "\n".join(f"- {step}" for step in completed_steps) or "(none)"
        sections = [
            f"Task:\n{task}",
            f"Plan that failed:\n{prior_plan}",
            f"Steps already completed:\n{completed}",
            f"Error ({classification}):\n{error_message[:2000]}",
        ]
        if instructions:
            sections.append(f"User instructions:\n{instructions}")
        sections.append(
            "Propose a corrected plan for the remaining work only. It replaces the rest"
            " of the failed plan."
        )
        sections.append(FORMAT_INSTRUCTIONS)
        return self._request_text("\n\n".join(sections), purpose="correction")

    def _request_text(self, user_message: str, *, purpose: str) -> str:
        payload = self._build_payload(user_message)
        body = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        LOGGER.debug(
            "llm_request_prepared",
            extra={
                "api_url": self.api_url,
                "model": self.model,
                "purpose": purpose,
                "payload_bytes": len(body),
                "reasoning_effort": self.reasoning_effort,
            },
        )

        req = request.Request(self.api_url, data=body, headers=headers, method="POST")
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                raw_response = json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            body_excerpt = self._read_error_body_excerpt(exc)
            LOGGER.error(
                "llm_request_http_error",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "http_status": exc.code,
                    "reason": exc.reason,
                    "response_excerpt": body_excerpt,
                },
            )
            details = f"Model request failed with HTTP {exc.code}: {exc.reason}"
            if body_excerpt:
                details = f"{details}. Response body: {body_excerpt}"
            raise ModelRequestError(details) from exc
        except URLError as exc:
            LOGGER.error(
                "llm_request_transport_error",
                extra={"api_url": self.api_url, "model": self.model, "reason": str(exc.reason)},
            )
            raise ModelRequestError(f"Model request transport error: {exc.reason}") from exc
        except TimeoutError as exc:
            LOGGER.error(
                "llm_request_timeout",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "timeout_seconds": self.timeout,
                },
            )
            raise ModelRequestError(f"Model request timed out after {self.timeout:.1f}s") from exc
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            LOGGER.error(
                "llm_response_parse_error",
                extra={"api_url": self.api_url, "model": self.model, "error": str(exc)},
            )
            raise ModelRequestError(f"Model response parsing error: {exc}") from exc

        raw = self._coerce_object_dict(raw_response)
        if raw is None:
            raise ModelRequestError("Model response parsing error: expected top-level object")
        text = self._extract_output_text(raw)
        if text is None:
            raise ModelRequestError("Model response contained no text output")
        return text

    def _build_payload(self, user_message: str) -> dict[str, object]:
        payload: dict[str, object] = {
            "model": self.model,
            "input": [
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": user_message},
            ],
        }
        if self.reasoning_effort:
            payload["reasoning"] = {"effort": self.reasoning_effort}
        return payload

    @staticmethod
    def _serialize_execution(execution: PlanExecution) -> dict[str, object]:
        return {
            "plan_number": execution.plan_number,
            "execution_time": execution.execution_time,
            "results": [
                {
                    "kind": outcome.action.kind,
                    "description": outcome.action.description,
                    "success": outcome.success,
                    "skipped": outcome.skipped,
                    "result": (outcome.result or "")[:800] or None,
                    "error": (outcome.error or "")[:800] or None,
                }
                for outcome in execution.results
            ],
        }

    @staticmethod
    def _serialize_context_with_limit(
        session_context: list[dict[str, object]],
        *,
        max_context_chars: int,
    ) -> str:
        if max_context_chars <= 0 or not session_context:
            return "[]"

        selected: list[dict[str, object]] = []
        for event in reversed(session_context):
            candidate = [event, *selected]
            serialized = json.dumps(candidate, indent=2, ensure_ascii=False)
            if len(serialized) > max_context_chars:
                break
            selected = candidate

        return json.dumps(selected, indent=2, ensure_ascii=False)

    @staticmethod
    def _coerce_object_dict(value: object) -> dict[str, object] | None:
        if not isinstance(value, dict):
            return None
        return {str(key): raw_value for key, raw_value in value.items()}

    @classmethod
    def _extract_output_text(cls, payload: dict[str, object]) -> str | None:
        output_text = payload.get("output_text")
        if isinstance(output_text, str) and output_text.strip():
            return output_text

        output_items = payload.get("output")
        if not isinstance(output_items, list):
            return None

        chunks: list[str] = []
        for item in output_items:
            item_object = cls._coerce_object_dict(item)
            if item_object is None:
                continue
            content_items = item_object.get("content")
            if not isinstance(content_items, list):
                continue
            for content in content_items:
                content_object = cls._coerce_object_dict(content)
                if content_object is None:
                    continue
                content_text = content_object.get("text")
                if content_object.get("type") == "output_text" and isinstance(content_text, str):
                    chunks.append(content_text)
        return "".join(chunks) if chunks else None

    @staticmethod
    def _read_error_body_excerpt(exc: HTTPError, *, max_chars: int = 500) -> str | None:
        if exc.fp is None:
            return None
        try:
            raw = exc.read()
        except OSError:
            return None

        if not raw:
            return None

        excerpt = raw.decode("utf-8", errors="replace").replace("\n", " ").strip()
        if len(excerpt) > max_chars:
            return f"{excerpt[:max_chars]}..."
        return excerpt
