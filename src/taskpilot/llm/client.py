"""Thin chat-completions client for planning, error analysis and chat."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from urllib import request
from urllib.error import HTTPError, URLError

from taskpilot.agent.models import (
    ACTION_CATALOG,
    ActionKind,
    ErrorAnalysis,
    ErrorInfo,
    PlanResponse,
    PlanStep,
    ProjectContext,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_API_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "moonshotai/kimi-k2:free"
MAX_HISTORY_MESSAGES = 40

_JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")

CHAT_SYSTEM_PROMPT = " ".join(
    [
        "You are taskpilot, a helpful assistant for developers working in a local project.",
        "Answer questions, explain code and offer advice concisely but thoroughly.",
        (
            "If the user asks you to perform a task such as creating a file or running"
            " a command, explain that they should submit it as a task instead."
        ),
    ]
)

RESULT_FORMATTING_PROMPT = "\n".join(
    [
        "You executed a tool and got results. Format the output for the developer.",
        "- Lay out file and directory listings as a tree or organized list.",
        "- Highlight the key issue in error output.",
        "- Summarize the important parts of command output.",
        "- Keep it concise but complete, adding next steps when useful.",
        "Respond with ONLY the formatted output, no JSON and no extra text.",
    ]
)


class ModelError(RuntimeError):
    """Raised when the model cannot be reached or its reply cannot be used."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def build_task_system_prompt(available_actions: Sequence[ActionKind]) -> str:
    tool_lines = "\n".join(f"- {action}: {ACTION_CATALOG[action]}" for action in available_actions)
    return "\n".join(
        [
            "You are a coding agent that manages a local project through tools.",
            "",
            "You have access to these tools:",
            tool_lines,
            "",
            "When given a task, analyze it, create a step-by-step plan using only the tools",
            "above, and return ONLY a JSON object of this exact shape:",
            '{"plan": [{"action": "tool_name", "parameters": {}, "expected_outcome": "..."}],',
            ' "reasoning": "brief explanation of your approach", "confidence": 0.85}',
            "",
            "Rules:",
            "- Use valid tool names from the list above with the parameters they expect.",
            "- Use paths relative to the workspace root.",
            "- Create a directory with create_directory before creating files inside it.",
            "- Be precise and safe. Confidence is a number from 0.0 to 1.0.",
        ]
    )


class LLMClient:
    """Small HTTP client for OpenAI-compatible chat completion endpoints."""

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str = DEFAULT_MODEL,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 60.0,
        max_history_messages: int = MAX_HISTORY_MESSAGES,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.max_history_messages = max_history_messages
        self._history: list[dict[str, str]] = []

    def clear_history(self) -> None:
        self._history = []
        LOGGER.info("llm_history_cleared")

    def plan_task(
        self,
        task: str,
        context: ProjectContext,
        available_actions: Sequence[ActionKind],
    ) -> PlanResponse:
        LOGGER.info("llm_plan_requested", extra={"project_type": context.project_type})
        self._remember("user", self._build_task_prompt(task, context, available_actions))
        content = self._complete(
            [
                {"role": "system", "content": build_task_system_prompt(available_actions)},
                *self._history,
            ],
            temperature=0.3,
            max_tokens=4096,
        )
        parsed = self._parse_json_object(content)
        self._remember("assistant", content)

        raw_plan = parsed.get("plan") or []
        if not isinstance(raw_plan, list):
            msg = "Model returned a plan that is not a list"
            raise ModelError(msg)
        plan = self._to_steps(raw_plan)

        reasoning = parsed.get("reasoning")
        confidence = parsed.get("confidence")
        LOGGER.info(
            "llm_plan_received",
            extra={"steps": len(plan), "confidence": confidence},
        )
        return PlanResponse(
            plan=plan,
            reasoning=reasoning if isinstance(reasoning, str) else "",
            confidence=(
                float(confidence)
                if isinstance(confidence, (int, float)) and not isinstance(confidence, bool)
                else 0.5
            ),
        )

    def analyze_error(self, error_info: ErrorInfo) -> ErrorAnalysis:
        prompt = "\n".join(
            [
                "Analyze this error and suggest fixes.",
                "",
                f"Error kind: {error_info.kind}",
                f"Error: {error_info.message}",
                f"Context: {error_info.context or ''}",
                f"Source: {error_info.source}",
                "",
                'Respond with JSON: {"analysis": "what went wrong", "suggestions":'
                ' [{"action": "tool_name", "parameters": {}, "expected_outcome": "what this fixes"}]}',
            ]
        )
        content = self._complete(
            [
                {"role": "system", "content": build_task_system_prompt(tuple(ACTION_CATALOG))},
                {"role": "user", "content": prompt},
            ],
            temperature=0.3,
            max_tokens=2048,
        )
        parsed = self._parse_json_object(content)
        analysis = parsed.get("analysis")
        raw_suggestions = parsed.get("suggestions") or []
        suggestions = self._to_steps(raw_suggestions) if isinstance(raw_suggestions, list) else []
        LOGGER.info(
            "llm_error_analyzed",
            extra={"error_kind": error_info.kind, "suggestions": len(suggestions)},
        )
        return ErrorAnalysis(
            analysis=analysis if isinstance(analysis, str) else "",
            suggestions=suggestions,
        )

    def format_tool_result(self, action: str, raw_data: object, task: str) -> str:
        prompt = (
            f"{RESULT_FORMATTING_PROMPT}\n\n"
            f"Tool Used: {action}\n"
            f"Original Request: {task}\n"
            "Tool Result:\n"
            f"{json.dumps(raw_data, indent=2, ensure_ascii=False, default=str)}"
        )
        return self._complete(
            [
                {"role": "system", "content": RESULT_FORMATTING_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=0.5,
            max_tokens=2048,
        )

    def chat(self, message: str) -> str:
        self._remember("user", message)
        content = self._complete(
            [{"role": "system", "content": CHAT_SYSTEM_PROMPT}, *self._history],
            temperature=0.7,
            max_tokens=4096,
        )
        self._remember("assistant", content)
        return content

    @staticmethod
    def _build_task_prompt(
        task: str,
        context: ProjectContext,
        available_actions: Sequence[ActionKind],
    ) -> str:
        lines = [
            f"Task: {task}",
            "",
            "Project Context:",
            f"- Workspace: {context.workspace_root}",
            f"- Current File: {context.current_file or 'none'}",
            f"- Open Files: {', '.join(context.open_files[:5]) or 'none'}",
            f"- Project Type: {context.project_type or 'unknown'}",
        ]
        if context.recent_errors:
            recent = "; ".join(error.message for error in context.recent_errors)
            lines.append(f"- Recent Errors: {recent}")
        lines.extend(
            [
                "",
                f"Available Tools: {', '.join(available_actions)}",
                "",
                "Analyze this task and provide a JSON execution plan.",
            ]
        )
        return "\n".join(lines)

    def _remember(self, role: str, content: str) -> None:
        self._history.append({"role": role, "content": content})
        if len(self._history) > self.max_history_messages:
            self._history = self._history[-self.max_history_messages :]

    def _complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
    ) -> str:
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        response = self._post(payload)
        choices = response.get("choices")
        content: object = None
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message")
            if isinstance(message, dict):
                content = message.get("content")
        if not isinstance(content, str) or not content.strip():
            msg = "Empty response from API"
            raise ModelError(msg)
        return content

    def _post(self, payload: dict[str, object]) -> dict[str, object]:
        url = f"{self.api_url}/chat/completions"
        body = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json", "X-Title": "taskpilot"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        LOGGER.debug(
            "llm_request_prepared",
            extra={
                "api_url": url,
                "model": self.model,
                "payload_bytes": len(body),
                "message_count": len(payload.get("messages", [])),  # type: ignore[arg-type]
            },
        )

        req = request.Request(url, data=body, headers=headers, method="POST")
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                raw_response = json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            message = self._read_error_message(exc)
            LOGGER.error(
                "llm_request_http_error",
                extra={
                    "api_url": url,
                    "model": self.model,
                    "http_status": exc.code,
                    "response_excerpt": message,
                },
            )
            raise ModelError(_http_error_text(exc.code, message), status=exc.code) from exc
        except URLError as exc:
            LOGGER.error(
                "llm_request_transport_error",
                extra={"api_url": url, "model": self.model, "reason": str(exc.reason)},
            )
            msg = f"Model request transport error: {exc.reason}"
            raise ModelError(msg) from exc
        except TimeoutError as exc:
            LOGGER.error(
                "llm_request_timeout",
                extra={"api_url": url, "model": self.model, "timeout_seconds": self.timeout},
            )
            msg = f"Model request timed out after {self.timeout:.1f}s"
            raise ModelError(msg) from exc
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            LOGGER.error(
                "llm_response_parse_error",
                extra={"api_url": url, "model": self.model, "error": str(exc)},
            )
            msg = f"Model response parsing error: {exc}"
            raise ModelError(msg) from exc

        if not isinstance(raw_response, dict):
            msg = "Model response parsing error: expected top-level object"
            raise ModelError(msg)
        LOGGER.debug(
            "llm_response_received",
            extra={"model": raw_response.get("model"), "usage": raw_response.get("usage")},
        )
        return {str(key): value for key, value in raw_response.items()}

    @staticmethod
    def _parse_json_object(content: str) -> dict[str, object]:
        match = _JSON_OBJECT_PATTERN.search(content)
        candidate = match.group(0) if match else content
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as exc:
            msg = f"Invalid JSON response from AI: {content[:200]}"
            raise ModelError(msg) from exc
        if not isinstance(parsed, dict):
            msg = f"Invalid JSON response from AI: {content[:200]}"
            raise ModelError(msg)
        return {str(key): value for key, value in parsed.items()}

    @staticmethod
    def _to_steps(raw_steps: list[object]) -> list[PlanStep]:
        try:
            return [PlanStep.from_payload(item) for item in raw_steps]
        except ValueError as exc:
            raise ModelError(str(exc)) from exc

    @staticmethod
    def _read_error_message(exc: HTTPError, *, max_chars: int = 500) -> str | None:
        if exc.fp is None:
            return None
        try:
            raw = exc.read()
        except OSError:
            return None
        if not raw:
            return None

        text = raw.decode("utf-8", errors="replace")
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            error = parsed.get("error")
            if isinstance(error, dict) and isinstance(error.get("message"), str):
                return str(error["message"])

        excerpt = text.replace("\n", " ").strip()
        if len(excerpt) > max_chars:
            return f"{excerpt[:max_chars]}..."
        return excerpt


def _http_error_text(status: int, message: str | None) -> str:
    if status == 401:
        return "Invalid API key. Please check your API key in settings."
    if status == 402:
        return "Insufficient credits. Please add credits to your account."
    if status == 429:
        return "Rate limit exceeded. Please wait and try again."
    if status == 400:
        return f"Bad request: {message or 'Unknown error'}"
    return f"API error ({status}): {message or 'Unknown error'}"