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

"""Language detection and cursor region classification.

The classifier parses the document with a pre-compiled tree-sitter
grammar and reports whether the cursor sits in code, a string literal
or a comment. It backs the gate's syntax rule when the editor does not
supply a hint of its own.
"""

import logging
from typing import TYPE_CHECKING, Dict, Optional
from urllib.parse import urlparse

from tree_sitter import Language, Parser

from victor_inline.protocol import SyntaxRegion

if TYPE_CHECKING:
    from tree_sitter import Node

logger = logging.getLogger(__name__)


# Format: "language_name": ("module_name", "function_name")
LANGUAGE_MODULES: Dict[str, tuple] = {
    "python": ("tree_sitter_python", "language"),
    "javascript": ("tree_sitter_javascript", "language"),
    "typescript": ("tree_sitter_typescript", "language_typescript"),
    "tsx": ("tree_sitter_typescript", "language_tsx"),
    "java": ("tree_sitter_java", "language"),
    "go": ("tree_sitter_go", "language"),
    "rust": ("tree_sitter_rust", "language"),
    "c": ("tree_sitter_c", "language"),
    "cpp": ("tree_sitter_cpp", "language"),
    "ruby": ("tree_sitter_ruby", "language"),
    "bash": ("tree_sitter_bash", "language"),
}

EXTENSION_LANGUAGES: Dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".rs": "rust",
    ".go": "go",
    ".java": "java",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".rb": "ruby",
    ".php": "php",
    ".swift": "swift",
    ".kt": "kotlin",
    ".scala": "scala",
    ".sql": "sql",
    ".sh": "bash",
    ".bash": "bash",
    ".md": "markdown",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".html": "html",
    ".css": "css",
}

# Node types that are string literals or parts of one
STRING_NODE_TYPES = frozenset(
    {
        "string",
        "string_content",
        "string_fragment",
        "string_literal",
        "raw_string_literal",
        "interpreted_string_literal",
        "template_string",
        "char_literal",
        "character_literal",
        "string_start",
        "string_end",
    }
)
COMMENT_NODE_TYPES = frozenset({"comment", "line_comment", "block_comment"})
# Embedded code inside a string (f-strings, template literals)
INTERPOLATION_NODE_TYPES = frozenset({"interpolation", "template_substitution"})


def detect_language(uri: str, content: str = "") -> str:
    """Detect language from a document URI and content.

    Args:
        uri: Document URI or path
        content: Document content, used for shebang detection

    Returns:
        Language identifier ("text" if unknown)
    """
    path = urlparse(uri).path if "://" in uri else uri
    dot = path.rfind(".")
    if dot != -1 and "/" not in path[dot:]:
        ext = path[dot:].lower()
        if ext in EXTENSION_LANGUAGES:
            return EXTENSION_LANGUAGES[ext]

    if content.startswith("#!"):
        first_line = content.split("\n")[0]
        if "python" in first_line:
            return "python"
        if "node" in first_line:
            return "javascript"
        if "ruby" in first_line:
            return "ruby"
        if "bash" in first_line or "sh" in first_line:
            return "bash"

    return "text"


class SyntaxClassifier:
    """Classifies the cursor position using tree-sitter grammars.

    Grammars are loaded lazily from their language packages
    (e.g. ``tree-sitter-python``) and parsers are cached per language.
    Languages without an installed grammar classify as UNKNOWN.
    """

    def __init__(self):
        self._languages: Dict[str, Language] = {}
        self._parsers: Dict[str, Parser] = {}
        self._unavailable: set[str] = set()

    def supports(self, language: str) -> bool:
        return self._get_parser(language) is not None

    def classify(self, text: str, offset: int, language: str) -> SyntaxRegion:
        """Classify the region at a character offset.

        Args:
            text: Full document text
            offset: Cursor offset in characters
            language: Language identifier

        Returns:
            CODE, STRING or COMMENT, or UNKNOWN when the language
            cannot be parsed
        """
        parser = self._get_parser(language)
        if parser is None:
            return SyntaxRegion.UNKNOWN

        offset = max(0, min(offset, len(text)))
        byte_offset = len(text[:offset].encode("utf-8"))
        tree = parser.parse(text.encode("utf-8"))

        node: Optional["Node"] = tree.root_node.descendant_for_byte_range(byte_offset, byte_offset)
        while node is not None:
            if node.type in INTERPOLATION_NODE_TYPES:
                return SyntaxRegion.CODE
            if node.type in COMMENT_NODE_TYPES and node.start_byte < byte_offset <= node.end_byte:
                return SyntaxRegion.COMMENT
            if node.type in STRING_NODE_TYPES and node.start_byte < byte_offset < node.end_byte:
                return SyntaxRegion.STRING
            node = node.parent

        return SyntaxRegion.CODE

    def _get_parser(self, language: str) -> Optional[Parser]:
        if language in self._parsers:
            return self._parsers[language]
        if language in self._unavailable:
            return None

        lang = self._load_language(language)
        if lang is None:
            self._unavailable.add(language)
            return None

        parser = Parser(lang)
        self._parsers[language] = parser
        return parser

    def _load_language(self, language: str) -> Optional[Language]:
        if language in self._languages:
            return self._languages[language]

        module_info = LANGUAGE_MODULES.get(language)
        if not module_info:
            logger.debug(f"No tree-sitter grammar known for language: {language}")
            return None

        module_name, func_name = module_info
        try:
            language_module = __import__(module_name)
            lang_obj = getattr(language_module, func_name)()
        except ImportError:
            logger.debug(
                f"Language package '{module_name}' not installed "
                f"(pip install {module_name.replace('_', '-')})"
            )
            return None
        except AttributeError:
            logger.warning(f"Language module '{module_name}' has no function '{func_name}'")
            return None

        lang = Language(lang_obj) if not isinstance(lang_obj, Language) else lang_obj
        self._languages[language] = lang
        return lang
