"""Prompt templates for the try-on composition call."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict


@dataclass
class PromptTemplate:
    name: str
    template: str
    description: str

    def render(self, **values: str) -> str:
        return self.template.format(**values)


PROMPTS: Dict[str, PromptTemplate] = {
    "tryon_composite": PromptTemplate(
        name="tryon_composite",
        template="""You are a photo compositing and virtual try-on specialist. Edit the person in Image 1 so they are wearing the garment from Image 2 ("{garment}").

Identity lock (highest priority):
- Image 1 is the master photo. Keep the face, skin tone, body shape, hairstyle and proportions identical.
- Keep the original lighting direction and background.

Garment:
- Fully replace the clothing the person is wearing with the garment from Image 2.
- Match its exact color, texture, pattern and material, fitted naturally to the body.

Output:
- One image containing a 2x2 grid of four photos of the same person wearing the garment.
- The four photos differ only by pose, camera angle or body orientation.
- Return image data only. Do not reply with text.""",
        description="Fixed instruction sent with every try-on generation call.",
    ),
}


def tryon_instruction(garment_label: str) -> str:
    label = (garment_label or "").strip() or "clothing item"
    return PROMPTS["tryon_composite"].render(garment=label)
