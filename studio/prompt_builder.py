"""
Prompt builder for the "advanced settings" panel.

Each option owns a fixed phrase. Selecting an option splices its phrase into
the free-text prompt, selecting it again removes it, and picking a different
option in a single-choice category swaps the phrases. Text the user typed
around the managed phrases is left alone.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field, replace
from typing import Dict, List, Optional, Tuple

_DOUBLE_COMMA = re.compile(r",\s*,\s*")
_LEADING_COMMA = re.compile(r"^,\s*")
_TRAILING_COMMA = re.compile(r",\s*$")


@dataclass(frozen=True)
class PromptOption:
  value: str
  label: str
  prompt_text: str
  swatch: Optional[str] = None


@dataclass(frozen=True)
class Preset:
  value: str
  label: str
  description: str
  camera_shot: Optional[str] = None
  background: Optional[str] = None
  expression: Optional[str] = None
  accessories: Tuple[str, ...] = ()
  gender: Optional[str] = None


BACKGROUNDS = (
  PromptOption("white", "White", "on a white background", "#ffffff"),
  PromptOption("black", "Black", "on a black background", "#000000"),
  PromptOption("red", "Red", "on a red background", "#ef4444"),
  PromptOption("blue", "Blue", "on a blue background", "#3b82f6"),
  PromptOption("green", "Green", "on a green background", "#10b981"),
  PromptOption("yellow", "Yellow", "on a yellow background", "#eab308"),
  PromptOption("purple", "Purple", "on a purple background", "#8b5cf6"),
  PromptOption("pink", "Pink", "on a pink background", "#ec4899"),
  PromptOption("orange", "Orange", "on an orange background", "#f97316"),
  PromptOption("gray", "Gray", "on a gray background", "#6b7280"),
  PromptOption("brown", "Brown", "on a brown background", "#78350f"),
  PromptOption("teal", "Teal", "on a teal background", "#14b8a6"),
)

EXPRESSIONS = (
  PromptOption("smile", "Smiling", "with a natural smile"),
  PromptOption("laugh", "Laughing", "with a genuine laugh"),
  PromptOption("serious", "Serious", "with a serious expression"),
  PromptOption("thoughtful", "Thoughtful", "with a thoughtful expression"),
  PromptOption("sad", "Sad", "with a sad expression"),
  PromptOption("confident", "Confident", "with a confident expression"),
  PromptOption("surprised", "Surprised", "with a surprised expression"),
  PromptOption("choked", "Shocked", "with a shocked expression"),
)

ACCESSORIES = (
  PromptOption("glasses", "Glasses", "wearing glasses"),
  PromptOption("sunglasses", "Sunglasses", "wearing sunglasses"),
  PromptOption("hat", "Hat", "wearing a hat"),
  PromptOption("beanie", "Beanie", "wearing a beanie"),
  PromptOption("scarf", "Scarf", "wearing a scarf"),
  PromptOption("earrings", "Earrings", "wearing earrings"),
  PromptOption("necklace", "Necklace", "wearing a necklace"),
  PromptOption("headphones", "Headphones", "wearing headphones"),
  PromptOption("tie", "Tie", "wearing a tie"),
  PromptOption("bowtie", "Bow Tie", "wearing a bow tie"),
  PromptOption("watch", "Watch", "wearing a watch"),
  PromptOption("suit", "Suit", "wearing a suit"),
)

CAMERA_SHOTS = (
  PromptOption("portrait", "Portrait", "A portrait shot"),
  PromptOption("closeup", "Close-up", "A close-up shot"),
  PromptOption("wide", "Wide", "A wide shot"),
  PromptOption("medium", "Medium", "A medium shot"),
  PromptOption("fullbody", "Full Body", "A full body shot"),
  PromptOption("extreme-closeup", "Extreme Close-up", "An extreme close-up shot"),
)

GENDERS = (
  PromptOption("male", "Male", "the subject is a male"),
  PromptOption("female", "Female", "the subject is a female"),
)

PRESETS = (
  Preset(
    "linkedin-profile",
    "LinkedIn Profile",
    "Professional headshot for LinkedIn.",
    camera_shot="portrait",
    background="white",
    expression="smile",
  ),
  Preset(
    "team-headshot",
    "Team Headshot",
    "Consistent look for team photos.",
    camera_shot="medium",
    background="gray",
    expression="smile",
  ),
  Preset(
    "casual-avatar",
    "Casual Avatar",
    "Relaxed style for social media.",
    camera_shot="closeup",
    expression="laugh",
    accessories=("beanie",),
  ),
  Preset(
    "formal-portrait",
    "Formal Portrait",
    "Classic formal portrait style.",
    camera_shot="portrait",
    background="black",
    expression="serious",
    accessories=("suit",),
  ),
)

CATALOGS: Dict[str, Tuple[PromptOption, ...]] = {
  "background": BACKGROUNDS,
  "expression": EXPRESSIONS,
  "accessory": ACCESSORIES,
  "camera_shot": CAMERA_SHOTS,
  "gender": GENDERS,
}

# Categories stored as a single value on the selection.
SINGLE_CHOICE = ("background", "expression", "camera_shot", "gender")


class UnknownOptionError(ValueError):
  """Raised for a category or option value that is not in the catalog."""


@dataclass(frozen=True)
class PromptSelection:
  background: Optional[str] = None
  expression: Optional[str] = None
  accessories: Tuple[str, ...] = field(default_factory=tuple)
  camera_shot: Optional[str] = None
  gender: Optional[str] = None
  preset: Optional[str] = None

  @classmethod
  def from_dict(cls, raw: Optional[Dict]) -> "PromptSelection":
    raw = raw or {}
    accessories = raw.get("accessories") or ()
    if isinstance(accessories, str):
      accessories = (accessories,)
    return cls(
      background=raw.get("background") or None,
      expression=raw.get("expression") or None,
      accessories=tuple(accessories),
      camera_shot=raw.get("camera_shot") or None,
      gender=raw.get("gender") or None,
      preset=raw.get("preset") or None,
    )

  def to_dict(self) -> Dict:
    payload = asdict(self)
    payload["accessories"] = list(self.accessories)
    return payload


def find_option(category: str, value: str) -> PromptOption:
  options = CATALOGS.get(category)
  if options is None:
    raise UnknownOptionError(f"Unknown category: {category}")
  for option in options:
    if option.value == value:
      return option
  raise UnknownOptionError(f"Unknown {category} option: {value}")


def find_preset(value: str) -> Preset:
  for preset in PRESETS:
    if preset.value == value:
      return preset
  raise UnknownOptionError(f"Unknown preset: {value}")


def clean_prompt(prompt: str) -> str:
  """Collapse empty comma slots left behind after removing a phrase."""
  cleaned = _DOUBLE_COMMA.sub(", ", prompt.strip())
  cleaned = _LEADING_COMMA.sub("", cleaned)
  return _TRAILING_COMMA.sub("", cleaned)


def remove_phrase(prompt: str, phrase: str) -> str:
  return clean_prompt(prompt.replace(phrase, "", 1))


def append_phrase(prompt: str, phrase: str) -> str:
  if prompt.endswith(",") or prompt.endswith(" "):
    return f"{prompt} {phrase}"
  if prompt:
    return f"{prompt}, {phrase}"
  return phrase


def prepend_phrase(prompt: str, phrase: str) -> str:
  return f"{phrase}, {prompt}" if prompt else phrase


def select(prompt: str, selection: PromptSelection, category: str, value: str) -> Tuple[str, PromptSelection]:
  """
  Toggle ``value`` in ``category`` and return the new prompt and selection.

  Camera shots lead the prompt; every other phrase is appended. Accessories
  are multi-select; the other categories hold at most one value.
  """
  option = find_option(category, value)

  if category == "accessory":
    if value in selection.accessories:
      remaining = tuple(item for item in selection.accessories if item != value)
      return remove_phrase(prompt, option.prompt_text), replace(selection, accessories=remaining)
    return append_phrase(prompt, option.prompt_text), replace(
      selection, accessories=selection.accessories + (value,)
    )

  current = getattr(selection, category)
  if current == value:
    return remove_phrase(prompt, option.prompt_text), replace(selection, **{category: None})

  updated = prompt
  if current:
    updated = remove_phrase(updated, find_option(category, current).prompt_text)

  if category == "camera_shot":
    updated = prepend_phrase(updated, option.prompt_text)
  else:
    updated = append_phrase(updated, option.prompt_text)
  return updated, replace(selection, **{category: value})


def reset(prompt: str, selection: PromptSelection) -> Tuple[str, PromptSelection]:
  """Strip every managed phrase from ``prompt`` and clear the selection."""
  updated = prompt
  for category in SINGLE_CHOICE:
    current = getattr(selection, category)
    if current:
      updated = remove_phrase(updated, find_option(category, current).prompt_text)
  for accessory in selection.accessories:
    updated = remove_phrase(updated, find_option("accessory", accessory).prompt_text)
  return updated, PromptSelection()


def apply_preset(prompt: str, selection: PromptSelection, preset_value: Optional[str]) -> Tuple[str, PromptSelection]:
  """
  Replace the managed phrases with those of ``preset_value``.

  An empty preset value only clears the current selection.
  """
  updated, cleared = reset(prompt, selection)
  if not preset_value:
    return updated, cleared

  preset = find_preset(preset_value)
  if preset.camera_shot:
    updated, cleared = select(updated, cleared, "camera_shot", preset.camera_shot)
  if preset.background:
    updated, cleared = select(updated, cleared, "background", preset.background)
  if preset.expression:
    updated, cleared = select(updated, cleared, "expression", preset.expression)
  for accessory in preset.accessories:
    updated, cleared = select(updated, cleared, "accessory", accessory)
  if preset.gender:
    updated, cleared = select(updated, cleared, "gender", preset.gender)
  return updated, replace(cleared, preset=preset.value)


def catalog_payload() -> Dict[str, List[Dict]]:
  """Serialisable catalog for ``GET /prompt/options``."""
  payload: Dict[str, List[Dict]] = {
    category: [asdict(option) for option in options] for category, options in CATALOGS.items()
  }
  payload["presets"] = [
    {**asdict(preset), "accessories": list(preset.accessories)} for preset in PRESETS
  ]
  return payload


__all__ = [
  "PromptSelection",
  "UnknownOptionError",
  "apply_preset",
  "catalog_payload",
  "clean_prompt",
  "reset",
  "select",
]
