"""Worker backed by a chat-completion LLM.

One invocation is one chat request and counts as one turn. The model is
asked to finish with a JSON object; that object becomes `AgentResult.output`.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from phased_agent_orchestrator.llm.provider import ChatCompletion, LLMProvider, LLMProviderError
from phased_agent_orchestrator.orchestrator.config import LLMConfig
from phased_agent_orchestrator.orchestrator.workflow.models import AgentResult, WorkerRequest

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```json\s*(?P<body>.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json_output(text: str) -> dict[str, Any]:
    """Parse the worker's structured output.

    Tries the last ```json fenced block, then the whole text. Anything that is
    not a JSON object is returned as ``{"rawOutput": text}``.
    """

    candidates = [m.group("body") for m in _FENCED_JSON.finditer(text)][::-1]
    candidates.append(text)
    for candidate in candidates:
        try:
            parsed = json.loads(candidate.strip())
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return {"rawOutput": text}


def _string_list(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value]


def build_messages(request: WorkerRequest) -> list[dict[str, str]]:
    context = request.context
    payload: dict[str, Any] = {
        "phase": request.phase_name,
        "feature": context.feature_description,
        "workingDirectory": str(context.working_directory),
        "allowedTools": list(request.agent.tools),
    }
    if context.phase_input:
        payload["phaseInput"] = dict(context.phase_input)
    if context.previous_results:
        payload["previousPhases"] = {
            name: {"role": result.role, "success": result.success, "output": result.output}
            for name, result in context.previous_results.items()
        }
    if context.additional_context:
        payload["additionalContext"] = context.additional_context
    if request.gate_feedback:
        payload["gateFailures"] = {
            gate: {"error": result.error, "warnings": list(result.warnings)}
            for gate, result in request.gate_feedback.items()
        }

    instructions = "Complete this phase."
    if request.gate_feedback:
        instructions = (
            "The quality gates listed under gateFailures blocked this phase. "
            "Fix what they report."
        )
    return [
        {"role": "system", "content": request.agent.system_prompt},
        {
            "role": "user",
            "content": f"{instructions}\n\n{json.dumps(payload, indent=2, default=str)}",
        },
    ]


class LLMWorker:
    """Implements the worker contract on top of an `LLMProvider`."""

    def __init__(self, provider: LLMProvider, config: LLMConfig) -> None:
        self._provider = provider
        self._config = config

    def cost_of(self, tier: str, completion: ChatCompletion) -> float:
        """USD cost of a completion; unknown tiers are free."""

        input_price, output_price = self._config.pricing.get(tier, (0.0, 0.0))
        return (
            completion.input_tokens * input_price + completion.output_tokens * output_price
        ) / 1_000_000

    def invoke(self, request: WorkerRequest) -> AgentResult:
        model_id = self._config.model_ids.get(request.model, request.model)
        logger.info(
            "Invoking worker",
            extra={"role": request.role, "phase": request.phase_name, "model": model_id},
        )
        try:
            completion = self._provider.chat(
                build_messages(request),
                model=model_id,
                max_tokens=self._config.max_output_tokens,
                timeout=request.max_duration_seconds,
            )
        except LLMProviderError as e:
            logger.warning("Worker request failed", extra={"role": request.role, "error": str(e)})
            return AgentResult(role=request.role, success=False, turns_used=1, error=str(e))

        output = extract_json_output(completion.text)
        error = output.get("error")
        reported = output.get("success")
        if reported is None:
            success = error is None
        elif isinstance(reported, bool):
            success = reported
        else:
            logger.warning(
                "Malformed worker output", extra={"role": request.role, "success": reported}
            )
            success = False
            error = f"Malformed worker output: 'success' must be a boolean, got {reported!r}"
        return AgentResult(
            role=request.role,
            success=success,
            output=output,
            files_created=_string_list(output.get("filesCreated")),
            files_modified=_string_list(output.get("filesModified")),
            commits=_string_list(output.get("commits")),
            cost_usd=self.cost_of(request.model, completion),
            turns_used=1,
            error=str(error) if error is not None and not success else None,
        )
