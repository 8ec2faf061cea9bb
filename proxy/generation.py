"""Typed generation requests for the Studio plugin.

Each generation type carries its own default system prompt and output budget.
Animation output is constrained by a JSON Schema: the small model is tried
first and, if its output does not parse or validate, the request is replayed
once on the larger model.
"""

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import jsonschema

import config
import providers
from errors import ServiceError


logger = logging.getLogger("tissue.generation")


GENERATION_TYPES = ("animation", "vfx", "script", "ui")

MAX_TOKENS: Dict[str, int] = {
    "animation": 4000,
    "vfx": 3000,
    "script": 4000,
    "ui": 3000,
}

RIG_TYPES = ("R6", "R15")
MAX_KEYFRAMES = 240
MAX_DURATION_SECONDS = 60.0

SYSTEM_PROMPTS: Dict[str, str] = {
    "animation": (
        "You are an animation generator for Roblox Studio. "
        "Return a single JSON object describing a KeyframeSequence: name, duration in seconds, "
        "rigType (R6 or R15), loop, and keyframes. Each keyframe has a time in seconds and a list "
        "of poses; each pose names a rig part and gives its rotation in degrees (x, y, z) and an "
        "optional position offset in studs. Keyframe times must be ascending and must not exceed "
        "the duration. Return JSON only, no prose."
    ),
    "vfx": (
        "You are a visual effects generator for Roblox Studio. "
        "Write a Luau ModuleScript that builds the requested effect from ParticleEmitters, Beams, "
        "Trails and Attachments, parents everything under a single Model, and exposes Play() and "
        "Stop(). Return only the code."
    ),
    "script": (
        "You are a Roblox Luau scripting assistant. "
        "Write complete, runnable Luau for the request. Use services through game:GetService, "
        "avoid deprecated APIs, and add short comments for non-obvious steps. Return only the code."
    ),
    "ui": (
        "You are a Roblox UI generator. "
        "Write a Luau LocalScript that creates the requested ScreenGui under PlayerGui using "
        "Frames, TextLabels, TextButtons, UICorner and UIListLayout. Use Scale sizing so the layout "
        "works on phones and desktops. Return only the code."
    ),
}

_VEC3 = {"type": "array", "items": {"type": "number"}, "minItems": 3, "maxItems": 3}

ANIMATION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "required": ["name", "duration", "rigType", "loop", "keyframes"],
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "duration": {"type": "number", "exclusiveMinimum": 0},
        "rigType": {"type": "string", "enum": list(RIG_TYPES)},
        "loop": {"type": "boolean"},
        "priority": {"type": "string", "enum": ["Core", "Idle", "Movement", "Action"]},
        "keyframes": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["time", "poses"],
                "properties": {
                    "time": {"type": "number", "minimum": 0},
                    "easing": {
                        "type": "string",
                        "enum": ["Linear", "Constant", "Sine", "Quad", "Cubic", "Bounce", "Elastic"],
                    },
                    "poses": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "required": ["part", "rotation"],
                            "properties": {
                                "part": {"type": "string", "minLength": 1},
                                "rotation": _VEC3,
                                "position": _VEC3,
                            },
                        },
                    },
                },
            },
        },
    },
}

SCHEMAS: Dict[str, Dict[str, Any]] = {"animation": ANIMATION_SCHEMA}

_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?```$", re.DOTALL)


class GenerationError(ServiceError):
    status_code = 502


class BadGenerationRequest(GenerationError):
    status_code = 400


class OutputValidationError(Exception):
    pass


@dataclass
class GenerationRequest:
    type: str
    system_prompt: str
    user_prompt: str
    rig_type: Optional[str] = None
    duration: Optional[float] = None
    keyframe_count: Optional[int] = None


@dataclass
class GenerationResult:
    content: Any
    model: str
    elapsed_ms: int
    usage: Dict[str, int] = field(default_factory=dict)
    attempts: int = 1

    def to_response(self) -> Dict[str, Any]:
        return {
            "success": True,
            "data": self.content,
            "usage": self.usage,
            "model": self.model,
            "elapsed_ms": self.elapsed_ms,
            "attempts": self.attempts,
        }


def _optional_number(body: Dict[str, Any], key: str) -> Optional[float]:
    v = body.get(key)
    if v is None:
        return None
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        raise BadGenerationRequest(f"{key} must be a number")
    return float(v)


def parse_generation_request(gen_type: str, body: Dict[str, Any]) -> GenerationRequest:
    gen_type = str(gen_type or "").strip().lower()
    if gen_type not in GENERATION_TYPES:
        raise BadGenerationRequest(
            f"unknown generation type: {gen_type or '(empty)'} (expected one of {', '.join(GENERATION_TYPES)})"
        )

    prompt = body.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise BadGenerationRequest("Missing prompt")

    system_prompt = body.get("systemPrompt")
    if system_prompt is not None and not isinstance(system_prompt, str):
        raise BadGenerationRequest("systemPrompt must be a string")
    if not system_prompt or not system_prompt.strip():
        system_prompt = SYSTEM_PROMPTS[gen_type]

    rig_type = body.get("rigType")
    if rig_type is not None:
        normalized = {r.lower(): r for r in RIG_TYPES}.get(str(rig_type).strip().lower())
        if normalized is None:
            raise BadGenerationRequest(f"rigType must be one of {', '.join(RIG_TYPES)}")
        rig_type = normalized

    duration = _optional_number(body, "duration")
    if duration is not None and not (0 < duration <= MAX_DURATION_SECONDS):
        raise BadGenerationRequest(f"duration must be between 0 and {MAX_DURATION_SECONDS:g} seconds")

    keyframe_count = body.get("keyframeCount")
    if keyframe_count is not None:
        if isinstance(keyframe_count, bool) or not isinstance(keyframe_count, int):
            raise BadGenerationRequest("keyframeCount must be an integer")
        if not (1 <= keyframe_count <= MAX_KEYFRAMES):
            raise BadGenerationRequest(f"keyframeCount must be between 1 and {MAX_KEYFRAMES}")

    return GenerationRequest(
        type=gen_type,
        system_prompt=system_prompt,
        user_prompt=prompt.strip(),
        rig_type=rig_type,
        duration=duration,
        keyframe_count=keyframe_count,
    )


def build_messages(req: GenerationRequest) -> List[Dict[str, str]]:
    user_text = req.user_prompt
    if req.type == "animation":
        hints = []
        if req.rig_type:
            hints.append(f"Rig type: {req.rig_type}")
        if req.duration is not None:
            hints.append(f"Duration: {req.duration:g} seconds")
        if req.keyframe_count is not None:
            hints.append(f"Keyframes: {req.keyframe_count}")
        if hints:
            user_text = user_text + "\n\n" + "\n".join(hints)
    return [
        {"role": "system", "content": req.system_prompt},
        {"role": "user", "content": user_text},
    ]


def _response_format(gen_type: str, schema: Dict[str, Any]) -> Dict[str, Any]:
    # strict=False: the schema uses keywords strict mode rejects; we validate locally instead.
    return {
        "type": "json_schema",
        "json_schema": {"name": f"{gen_type}_output", "schema": schema, "strict": False},
    }


def _candidate_models() -> List[str]:
    out: List[str] = []
    for model in (config.PRIMARY_MODEL, config.FALLBACK_MODEL):
        m = (model or "").strip()
        if m and m not in out:
            out.append(m)
    return out


def _parse_json_content(text: str) -> Any:
    raw = (text or "").strip()
    m = _FENCE_RE.match(raw)
    if m:
        raw = m.group(1).strip()
    if not raw:
        raise OutputValidationError("empty model output")
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise OutputValidationError(f"invalid JSON: {e.msg} at line {e.lineno}")


def _check_animation(doc: Dict[str, Any]) -> None:
    duration = float(doc["duration"])
    last = -1.0
    for i, kf in enumerate(doc["keyframes"]):
        t = float(kf["time"])
        if t < last:
            raise OutputValidationError(f"keyframes[{i}].time is not ascending")
        if t > duration + 1e-6:
            raise OutputValidationError(f"keyframes[{i}].time exceeds duration")
        last = t


def validate_output(gen_type: str, text: str) -> Any:
    schema = SCHEMAS.get(gen_type)
    if schema is None:
        return text
    doc = _parse_json_content(text)
    try:
        jsonschema.validate(instance=doc, schema=schema)
    except jsonschema.ValidationError as e:
        path = "/".join(str(p) for p in e.absolute_path) or "(root)"
        raise OutputValidationError(f"{path}: {e.message}")
    if gen_type == "animation":
        _check_animation(doc)
    return doc


def _add_usage(total: Dict[str, int], usage: Dict[str, int]) -> None:
    for k in ("prompt_tokens", "completion_tokens", "total_tokens"):
        total[k] = total.get(k, 0) + int(usage.get(k) or 0)


async def generate(req: GenerationRequest) -> GenerationResult:
    started = time.monotonic()
    messages = build_messages(req)
    max_tokens = MAX_TOKENS[req.type]
    schema = SCHEMAS.get(req.type)

    if schema is None:
        completion = await providers.call_openai(
            model=config.OPENAI_MODEL,
            messages=messages,
            max_tokens=max_tokens,
            temperature=0.7,
        )
        return GenerationResult(
            content=providers.extract_text(completion),
            model=config.OPENAI_MODEL,
            elapsed_ms=int((time.monotonic() - started) * 1000),
            usage=providers.extract_usage(completion),
        )

    usage: Dict[str, int] = {}
    last_error: Optional[OutputValidationError] = None
    for attempt, model in enumerate(_candidate_models(), start=1):
        completion = await providers.call_openai(
            model=model,
            messages=messages,
            max_tokens=max_tokens,
            response_format=_response_format(req.type, schema),
        )
        _add_usage(usage, providers.extract_usage(completion))
        try:
            content = validate_output(req.type, providers.extract_text(completion))
        except OutputValidationError as e:
            last_error = e
            logger.warning("[Generate] %s output from %s rejected: %s", req.type, model, e)
            continue
        return GenerationResult(
            content=content,
            model=model,
            elapsed_ms=int((time.monotonic() - started) * 1000),
            usage=usage,
            attempts=attempt,
        )

    logger.error("[Generate] %s: all models failed validation (last: %s)", req.type, last_error)
    raise GenerationError("model output failed schema validation")


async def generate_tiered(
    *,
    prompt: str,
    coins: Optional[int],
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
) -> Dict[str, Any]:
    """Route a free-form prompt by tier; paid means the user has bought coins beyond the starting grant."""
    paid = coins is not None and coins > config.STARTING_COINS
    messages = [{"role": "user", "content": prompt}]
    max_tokens = max_tokens if isinstance(max_tokens, int) and max_tokens > 0 else 4096
    temperature = temperature if isinstance(temperature, (int, float)) else 0.7

    if paid:
        model = config.PAID_MODEL
        data = await providers.call_openai(
            model=model, messages=messages, max_tokens=max_tokens, temperature=temperature
        )
    else:
        model = config.FREE_MODEL
        data = await providers.call_openrouter(
            model=model, messages=messages, max_tokens=max_tokens, temperature=temperature
        )

    out = dict(data)
    out["tier"] = "paid" if paid else "free"
    out["model_used"] = model
    return out
