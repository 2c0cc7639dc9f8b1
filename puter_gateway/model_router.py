from __future__ import annotations

from dataclasses import dataclass
from typing import Any

DEFAULT_CHAT_MODEL = "gpt-4o-mini"
DEFAULT_IMAGE_MODEL = "flux-schnell-free"
MIN_THINKING_BUDGET_TOKENS = 1024

DRIVER_OPENAI = "openai-completion"
DRIVER_CLAUDE = "claude"
DRIVER_DEEPSEEK = "deepseek"
DRIVER_MISTRAL = "mistral"
DRIVER_GEMINI = "gemini"
DRIVER_XAI = "xai"
DRIVER_OPENROUTER = "openrouter"
DRIVER_TOGETHER = "together-ai"

IMAGE_DRIVER_OPENAI = "openai-image-generation"
IMAGE_DRIVER_GEMINI = "gemini-image-generation"
IMAGE_DRIVER_TOGETHER = "together-image-generation"

PROVIDER_PREFIXES = {
    "openrouter:": DRIVER_OPENROUTER,
    "togetherai:": DRIVER_TOGETHER,
}

MULTIMODAL_DRIVERS = frozenset(
    {DRIVER_OPENAI, DRIVER_CLAUDE, DRIVER_GEMINI, DRIVER_OPENROUTER, DRIVER_XAI}
)

# alias -> (driver, upstream model)
CHAT_MODELS: dict[str, tuple[str, str]] = {
    "gpt-4o": (DRIVER_OPENAI, "gpt-4o"),
    "gpt-4o-mini": (DRIVER_OPENAI, "gpt-4o-mini"),
    "gpt-4.1": (DRIVER_OPENAI, "gpt-4.1"),
    "gpt-4.1-mini": (DRIVER_OPENAI, "gpt-4.1-mini"),
    "gpt-4.1-nano": (DRIVER_OPENAI, "gpt-4.1-nano"),
    "gpt-4.5-preview": (DRIVER_OPENAI, "gpt-4.5-preview"),
    "gpt-5": (DRIVER_OPENAI, "gpt-5"),
    "gpt-5-mini": (DRIVER_OPENAI, "gpt-5-mini"),
    "gpt-5-nano": (DRIVER_OPENAI, "gpt-5-nano"),
    "gpt-5.1": (DRIVER_OPENAI, "gpt-5.1"),
    "o1": (DRIVER_OPENAI, "o1"),
    "o1-mini": (DRIVER_OPENAI, "o1-mini"),
    "o1-pro": (DRIVER_OPENAI, "o1-pro"),
    "o3": (DRIVER_OPENAI, "o3"),
    "o3-mini": (DRIVER_OPENAI, "o3-mini"),
    "o4-mini": (DRIVER_OPENAI, "o4-mini"),
    "claude-opus-4": (DRIVER_CLAUDE, "claude-opus-4-20250514"),
    "claude-sonnet-4": (DRIVER_CLAUDE, "claude-sonnet-4-20250514"),
    "claude-3.7-sonnet": (DRIVER_CLAUDE, "claude-3-7-sonnet-20250219"),
    "claude-3-7-sonnet": (DRIVER_CLAUDE, "claude-3-7-sonnet-20250219"),
    "claude-3.5-sonnet": (DRIVER_CLAUDE, "claude-3-5-sonnet-20241022"),
    "claude-3-5-sonnet": (DRIVER_CLAUDE, "claude-3-5-sonnet-20241022"),
    "claude-3-haiku": (DRIVER_CLAUDE, "claude-3-haiku-20240307"),
    "deepseek-chat": (DRIVER_DEEPSEEK, "deepseek-chat"),
    "deepseek-reasoner": (DRIVER_DEEPSEEK, "deepseek-reasoner"),
    "mistral-large-latest": (DRIVER_MISTRAL, "mistral-large-latest"),
    "mistral-small-latest": (DRIVER_MISTRAL, "mistral-small-latest"),
    "codestral-latest": (DRIVER_MISTRAL, "codestral-latest"),
    "pixtral-large-latest": (DRIVER_MISTRAL, "pixtral-large-latest"),
    "gemini-2.0-flash": (DRIVER_GEMINI, "gemini-2.0-flash"),
    "gemini-2.5-flash": (DRIVER_GEMINI, "gemini-2.5-flash"),
    "gemini-2.5-pro": (DRIVER_GEMINI, "gemini-2.5-pro"),
    "gemini-1.5-flash": (DRIVER_GEMINI, "gemini-1.5-flash"),
    "grok-beta": (DRIVER_XAI, "grok-beta"),
    "grok-2": (DRIVER_XAI, "grok-2"),
    "grok-3": (DRIVER_XAI, "grok-3"),
}

# Direct claude driver names to their OpenRouter slugs (tool use needs OpenRouter).
CLAUDE_OPENROUTER_SLUGS = {
    "claude-opus-4-20250514": "anthropic/claude-opus-4",
    "claude-sonnet-4-20250514": "anthropic/claude-sonnet-4",
    "claude-3-7-sonnet-20250219": "anthropic/claude-3.7-sonnet",
    "claude-3-5-sonnet-20241022": "anthropic/claude-3.5-sonnet",
    "claude-3-haiku-20240307": "anthropic/claude-3-haiku",
}

_CLAUDE_37_THINKING = "openrouter:anthropic/claude-3.7-sonnet:thinking"
THINKING_VARIANTS = {
    "claude-3.7-sonnet": _CLAUDE_37_THINKING,
    "claude-3-7-sonnet": _CLAUDE_37_THINKING,
    "claude-3-7-sonnet-20250219": _CLAUDE_37_THINKING,
    "anthropic/claude-3.7-sonnet": _CLAUDE_37_THINKING,
    "openrouter:anthropic/claude-3.7-sonnet": _CLAUDE_37_THINKING,
}

# Vendor slugs used when an unknown identifier falls through to OpenRouter.
OPENROUTER_VENDOR_PREFIXES = (
    ("claude", "anthropic"),
    ("gpt", "openai"),
    ("o1", "openai"),
    ("o3", "openai"),
    ("o4", "openai"),
    ("gemini", "google"),
    ("gemma", "google"),
    ("deepseek", "deepseek"),
    ("mistral", "mistralai"),
    ("mixtral", "mistralai"),
    ("codestral", "mistralai"),
    ("grok", "x-ai"),
    ("llama", "meta-llama"),
    ("qwen", "qwen"),
)

PROVIDER_FAMILIES = {
    DRIVER_OPENAI: "openai",
    DRIVER_CLAUDE: "anthropic",
    DRIVER_DEEPSEEK: "deepseek",
    DRIVER_MISTRAL: "mistral",
    DRIVER_GEMINI: "google",
    DRIVER_XAI: "xai",
}

IMAGE_MODEL_MAPPINGS = {
    "google/gemini-2.5-flash-image": "gemini-2.5-flash-image-preview",
    "google/gemini-2.5-flash-image-preview": "gemini-2.5-flash-image-preview",
    "google/gemini-3-pro-image": "gemini-3-pro-image-preview",
    "google/gemini-3-pro-image-preview": "gemini-3-pro-image-preview",
}

IMAGE_ALIASES = {
    "nano-banana": "gemini-2.5-flash-image-preview",
    "nano-banana-pro": "gemini-3-pro-image-preview",
    "flux-schnell": "black-forest-labs/FLUX.1-schnell",
    "flux-schnell-free": "black-forest-labs/FLUX.1-schnell-Free",
    "flux-dev": "black-forest-labs/FLUX.1-dev",
    "flux-pro": "black-forest-labs/FLUX.1-pro",
    "flux-kontext": "black-forest-labs/FLUX.1-kontext-dev",
    "sdxl": "stabilityai/stable-diffusion-xl-base-1.0",
    "sd3": "stabilityai/stable-diffusion-3-medium",
    "stable-diffusion-3": "stabilityai/stable-diffusion-3-medium",
    "seedream-3": "ByteDance-Seed/Seedream-3.0",
    "seedream-4": "ByteDance-Seed/Seedream-4.0",
    "gpt-image-1": "gpt-image-1",
    "dall-e-3": "dall-e-3",
    "dall-e-2": "dall-e-2",
    "imagen-4": "google/imagen-4.0-preview",
    "imagen-4-fast": "google/imagen-4.0-fast",
    "imagen-4-ultra": "google/imagen-4.0-ultra",
}

IMAGE_ALIAS_DESCRIPTIONS = (
    ("nano-banana", "Nano Banana (Gemini 2.5 Flash Image)", True),
    ("nano-banana-pro", "Nano Banana Pro (Gemini 3 Pro Image)", True),
    ("flux-schnell", "FLUX.1 Schnell", False),
    ("flux-schnell-free", "FLUX.1 Schnell Free", False),
    ("sdxl", "Stable Diffusion XL", False),
    ("sd3", "Stable Diffusion 3", False),
    ("gpt-image-1", "GPT Image 1", False),
    ("dall-e-3", "DALL-E 3", False),
)

# Gemini image models are only reachable through the OpenRouter chat driver.
OPENROUTER_IMAGE_MODELS = (
    "google/gemini-2.5-flash-image",
    "google/gemini-2.5-flash-image-preview",
    "google/gemini-3-pro-image-preview",
    "gemini-2.5-flash-image-preview",
    "gemini-3-pro-image-preview",
    "nano-banana",
    "nano-banana-pro",
)

OPENROUTER_IMAGE_SLUGS = {
    "nano-banana": "openrouter:google/gemini-2.5-flash-image-preview",
    "nano-banana-pro": "openrouter:google/gemini-3-pro-image-preview",
    "gemini-2.5-flash-image-preview": "openrouter:google/gemini-2.5-flash-image-preview",
    "gemini-3-pro-image-preview": "openrouter:google/gemini-3-pro-image-preview",
}


@dataclass(slots=True)
class RouteDecision:
    requested_model: str
    driver: str
    upstream_model: str
    provider: str
    include_reasoning: bool = False
    thinking: dict[str, Any] | None = None
    system_prelude: str | None = None
    supports_multimodal: bool = False


@dataclass(slots=True)
class ImageRoute:
    requested_model: str
    model: str
    driver: str
    via_openrouter: bool = False
    openrouter_model: str = ""


def provider_tag(model: str) -> str:
    """Logging-only provider label derived from the identifier as sent."""
    normalized = (model or "").strip().lower()
    for prefix in PROVIDER_PREFIXES:
        if normalized.startswith(prefix):
            return prefix[:-1]
    vendor, sep, _ = normalized.partition("/")
    if sep and vendor:
        return vendor
    known = CHAT_MODELS.get(normalized)
    if known is not None:
        return PROVIDER_FAMILIES.get(known[0], known[0])
    for marker, vendor_slug in OPENROUTER_VENDOR_PREFIXES:
        if normalized.startswith(marker):
            return vendor_slug
    return "unknown"


def thinking_prelude(budget_tokens: int) -> str:
    words = max(50, (budget_tokens * 3) // 4)
    return (
        "Before answering, reason through the problem step by step inside "
        "<think></think> tags. Put only your reasoning between the tags and "
        "write the final answer after the closing </think> tag. Keep the "
        f"reasoning under roughly {words} words."
    )


class ModelRouter:
    def resolve_chat(
        self,
        model: str | None,
        *,
        tools: Any = None,
        thinking_budget: int | None = None,
    ) -> RouteDecision:
        requested = str(model or "").strip() or DEFAULT_CHAT_MODEL
        lowered = requested.lower()
        has_tools = isinstance(tools, list) and len(tools) > 0
        budget = _coerce_budget(thinking_budget)

        if budget > 0 and lowered in THINKING_VARIANTS:
            return self._route(
                requested,
                DRIVER_OPENROUTER,
                THINKING_VARIANTS[lowered],
                include_reasoning=True,
            )

        for prefix, driver in PROVIDER_PREFIXES.items():
            if lowered.startswith(prefix):
                decision = self._route(requested, driver, requested)
                break
        else:
            known = CHAT_MODELS.get(lowered)
            if known is None:
                decision = self._route(
                    requested, DRIVER_OPENROUTER, _openrouter_slug(requested)
                )
            else:
                driver, upstream_model = known
                if driver == DRIVER_CLAUDE and has_tools:
                    slug = CLAUDE_OPENROUTER_SLUGS.get(
                        upstream_model, f"anthropic/{lowered}"
                    )
                    driver, upstream_model = DRIVER_OPENROUTER, f"openrouter:{slug}"
                decision = self._route(requested, driver, upstream_model)

        if budget > 0:
            decision.include_reasoning = True
            decision.system_prelude = thinking_prelude(budget)
            if decision.driver == DRIVER_CLAUDE:
                decision.thinking = {
                    "type": "enabled",
                    "budget_tokens": max(MIN_THINKING_BUDGET_TOKENS, budget),
                }
        return decision

    @staticmethod
    def _route(
        requested: str,
        driver: str,
        upstream_model: str,
        *,
        include_reasoning: bool | None = None,
    ) -> RouteDecision:
        if include_reasoning is None:
            include_reasoning = driver == DRIVER_OPENROUTER
        return RouteDecision(
            requested_model=requested,
            driver=driver,
            upstream_model=upstream_model,
            provider=provider_tag(requested),
            include_reasoning=include_reasoning,
            supports_multimodal=driver in MULTIMODAL_DRIVERS,
        )

    def resolve_image(self, model: str | None) -> ImageRoute:
        requested = str(model or "").strip() or DEFAULT_IMAGE_MODEL
        normalized = normalize_image_model(requested)
        lowered = requested.lower()
        via_openrouter = any(
            candidate in lowered for candidate in OPENROUTER_IMAGE_MODELS
        )
        return ImageRoute(
            requested_model=requested,
            model=normalized,
            driver=image_driver_for(normalized),
            via_openrouter=via_openrouter,
            openrouter_model=openrouter_image_model(requested),
        )

    @staticmethod
    def available_chat_models() -> list[dict[str, Any]]:
        return [
            {
                "id": alias,
                "object": "model",
                "owned_by": PROVIDER_FAMILIES.get(driver, driver),
            }
            for alias, (driver, _) in CHAT_MODELS.items()
        ]

    @staticmethod
    def available_image_models() -> list[dict[str, Any]]:
        return [
            {"id": alias, "name": name, "supports_img2img": supports_img2img}
            for alias, name, supports_img2img in IMAGE_ALIAS_DESCRIPTIONS
        ]


def normalize_image_model(model: str) -> str:
    normalized = model.strip()
    for prefix in PROVIDER_PREFIXES:
        if normalized.startswith(prefix):
            normalized = normalized[len(prefix) :]
    normalized = IMAGE_MODEL_MAPPINGS.get(normalized, normalized)
    return IMAGE_ALIASES.get(normalized.lower(), normalized)


def image_driver_for(model: str) -> str:
    lowered = model.lower()
    if "gpt-image" in lowered or "dall-e" in lowered or "dalle" in lowered:
        return IMAGE_DRIVER_OPENAI
    if "gemini" in lowered and "image" in lowered:
        return IMAGE_DRIVER_GEMINI
    return IMAGE_DRIVER_TOGETHER


def openrouter_image_model(model: str) -> str:
    normalized = model.strip()
    if normalized.startswith("openrouter:"):
        return normalized
    return OPENROUTER_IMAGE_SLUGS.get(normalized.lower(), f"openrouter:{normalized}")


def _openrouter_slug(model: str) -> str:
    if "/" in model:
        return f"openrouter:{model}"
    lowered = model.lower()
    for marker, vendor in OPENROUTER_VENDOR_PREFIXES:
        if lowered.startswith(marker):
            return f"openrouter:{vendor}/{model}"
    return f"openrouter:{model}"


def _coerce_budget(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        budget = int(value or 0)
    except (TypeError, ValueError):
        return 0
    return max(0, budget)
