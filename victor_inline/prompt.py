# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Fill-in-the-middle prompt construction.

Context snippets are rendered as a comment block ahead of the prefix so
that FIM-trained models see them as part of the file.
"""

from typing import Optional, Sequence, Union

from victor_inline.protocol import CompletionRequest, ContextSnippet

# FIM (Fill-In-the-Middle) prompt templates per model family
FIM_TEMPLATES = {
    "default": {
        "prefix": "<PRE>",
        "suffix": "<SUF>",
        "middle": "<MID>",
        "format": "{prefix}{pre}{suffix}{suf}{middle}",
    },
    "codellama": {
        "prefix": "<PRE>",
        "suffix": " <SUF>",
        "middle": " <MID>",
        "format": "{prefix} {pre}{suffix}{suf}{middle}",
    },
    "starcoder": {
        "prefix": "<fim_prefix>",
        "suffix": "<fim_suffix>",
        "middle": "<fim_middle>",
        "format": "{prefix}{pre}{suffix}{suf}{middle}",
    },
    "deepseek": {
        "prefix": "<｜fim▁begin｜>",
        "suffix": "<｜fim▁hole｜>",
        "middle": "<｜fim▁end｜>",
        "format": "{prefix}{pre}{suffix}{suf}{middle}",
    },
    "qwen": {
        "prefix": "<|fim_prefix|>",
        "suffix": "<|fim_suffix|>",
        "middle": "<|fim_middle|>",
        "format": "{prefix}{pre}{suffix}{suf}{middle}",
    },
}

# Every marker a model may echo back, longest first
FIM_TOKENS = tuple(
    sorted(
        {
            template[key].strip()
            for template in FIM_TEMPLATES.values()
            for key in ("prefix", "suffix", "middle")
        },
        key=len,
        reverse=True,
    )
)

END_TOKENS = ("<|endoftext|>", "</s>", "<|im_end|>", "<|end|>", "<EOT>")

LINE_COMMENT_PREFIXES = {
    "python": "#",
    "ruby": "#",
    "bash": "#",
    "yaml": "#",
    "toml": "#",
    "sql": "--",
    "lua": "--",
    "haskell": "--",
}


def template_for_model(model: str) -> str:
    """Pick the FIM template name for a model."""
    model_lower = model.lower()
    for name in ("codellama", "starcoder", "deepseek", "qwen"):
        if name in model_lower:
            return name
    return "default"


def comment_prefix(language: str) -> str:
    return LINE_COMMENT_PREFIXES.get(language, "//")


class PromptBuilder:
    """Builds FIM prompts from a request and its context."""

    def __init__(self, template: Union[str, dict] = "default", max_context_lines: int = 100):
        """Initialize the builder.

        Args:
            template: FIM template name or custom template dict
            max_context_lines: Maximum prefix/suffix lines kept
        """
        if isinstance(template, dict):
            self._template = template
        else:
            self._template = FIM_TEMPLATES.get(template, FIM_TEMPLATES["default"])
        self._max_context_lines = max_context_lines

    @property
    def template(self) -> dict:
        return self._template

    def set_model(self, model: Optional[str]) -> None:
        """Switch template to match a model name."""
        if model:
            self._template = FIM_TEMPLATES[template_for_model(model)]

    def build(self, request: CompletionRequest, snippets: Sequence[ContextSnippet] = ()) -> str:
        """Build the FIM prompt.

        Args:
            request: The completion request
            snippets: Selected context, best first

        Returns:
            FIM formatted prompt
        """
        # Keep the end of the prefix and the beginning of the suffix
        prefix_lines = request.prefix_text.split("\n")
        prefix = "\n".join(prefix_lines[-self._max_context_lines :])
        suffix_lines = request.suffix_text.split("\n")
        suffix = "\n".join(suffix_lines[: self._max_context_lines])

        context = self.render_context(snippets, request.language)
        template = self._template
        return template["format"].format(
            prefix=template["prefix"],
            pre=context + prefix,
            suffix=template["suffix"],
            suf=suffix,
            middle=template["middle"],
        )

    def render_context(self, snippets: Sequence[ContextSnippet], language: str) -> str:
        """Render snippets as commented blocks."""
        if not snippets:
            return ""
        marker = comment_prefix(language)
        blocks = []
        for snippet in snippets:
            header = f"{marker} [{snippet.source_kind.value}]"
            if snippet.origin:
                header += f" {snippet.origin}"
            body = "\n".join(f"{marker} {line}".rstrip() for line in snippet.content.split("\n"))
            blocks.append(f"{header}\n{body}")
        return "\n".join(blocks) + "\n\n"
