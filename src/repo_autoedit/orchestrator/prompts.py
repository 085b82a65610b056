"""Prompt templates for edit, bulk-edit and expansion jobs."""

from typing import Any

MAX_SEED_PREVIEW = 20_000  # Max chars of seed content embedded in planning prompts

BLUEPRINT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "files": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "filePath": {
                        "type": "string",
                        "description": "New file path relative to the seed file's directory",
                    },
                    "description": {
                        "type": "string",
                        "description": "Purpose and contents of the new file",
                    },
                },
                "required": ["filePath", "description"],
            },
        }
    },
    "required": ["files"],
}


def build_edit_prompt(instruction: str, current_code: str) -> str:
    """Prompt for applying a user instruction to one file."""
    return f"""
You are an expert code assistant. Your task is to modify the provided code based on the user's instruction.
You MUST return only the complete, updated code block. Do not add any explanations, introductory text, or markdown code fences like ```.

Instruction:
{instruction}

---

Original Code:
{current_code}

---

Updated Code:
"""


def build_bulk_edit_prompt(instruction: str, current_code: str, file_path: str) -> str:
    """Prompt for applying a repository-wide directive to one file.

    The constraints about imports and exports are part of the expected model
    behaviour and must stay word for word.
    """
    return f"""
You are an expert AI programmer executing a high-level directive across an entire codebase.
For the file located at `{file_path}`, apply the following overall instruction:
"{instruction}"

Your task is to significantly enhance and expand this specific file based on the instruction.
- Add new features, classes, and functions that are relevant to the file's purpose and the main instruction. The goal is to substantially increase the file's value and content.
- You MUST NOT change or remove any existing import statements.
- Any new top-level functions, classes, or variables you create MUST be exported.
- Your changes should be mindful of the entire repository's architecture. Create code that can intelligently interact with other modules.
- Adhere strictly to the coding style and language of the original file.

Return ONLY the complete, updated code for the file. Do not include any explanations, markdown fences, or other text outside of the code itself.

---
Original Code from `{file_path}`:
{current_code}
---

Updated Code:
"""


def build_blueprint_prompt(
    goal: str,
    files_per_seed: int,
    seed_file_path: str,
    seed_content: str,
) -> str:
    """Prompt asking the architect for a list of new files derived from a seed."""
    preview = seed_content[:MAX_SEED_PREVIEW]
    return f"""
You are an expert software architect planning the expansion of a codebase.
The user's high-level goal is:
"{goal}"

Using the seed file `{seed_file_path}` as the anchor, propose exactly {files_per_seed} NEW files that move the codebase towards this goal.
- Every file path MUST be relative to the directory of the seed file (for example `models/user.ts` or `../services/api.ts`).
- Do not propose files that duplicate the seed file itself.
- Each description must explain the file's purpose and what it should contain, precisely enough for a programmer to write it without further context.
- Follow the language and conventions of the seed file.

Respond using the provided tool with a `files` list of {{filePath, description}} objects.

---
Seed file `{seed_file_path}`:
{preview}
---
"""


def build_blueprint_file_prompt(
    goal: str,
    seed_file_path: str,
    seed_content: str,
    new_file_path: str,
    description: str,
) -> str:
    """Prompt asking the programmer for the full contents of one new file."""
    return f"""
You are an expert AI programmer implementing one file of a planned codebase expansion.
The overall goal is:
"{goal}"

Create the new file `{new_file_path}`.
Its purpose: {description}

- The new file is derived from the seed file `{seed_file_path}` shown below; import from it where appropriate, using correct relative paths.
- Any top-level functions, classes, or variables you create MUST be exported.
- Adhere strictly to the coding style and language of the seed file.

Return ONLY the complete code for the new file. Do not include any explanations, markdown fences, or other text outside of the code itself.

---
Seed file `{seed_file_path}`:
{seed_content}
---

Code for `{new_file_path}`:
"""
