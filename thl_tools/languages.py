from enum import Enum


class Language(Enum):
    JAPANESE = 0
    ENGLISH = 1
    TRADITIONAL_CHINESE = 2
    SIMPLIFIED_CHINESE = 3

    @property
    def display_name(self) -> str:
        return self.name.replace('_', ' ').title()

    @property
    def text_file_name(self) -> str:
        return f"app_text{self.value:02d}.dx11.mvgl"

    @property
    def patch_file_name(self) -> str:
        return f"patch_text{self.value:02d}.dx11.mvgl"

    @property
    def cli_name(self) -> str:
        return self.name.lower().replace('_', '-')

    @classmethod
    def parse(cls, value: str) -> 'Language':
        """Accept 'english', 'simplified-chinese', 'Simplified Chinese'..."""
        normalized = value.strip().upper().replace('-', '_').replace(' ', '_')
        try:
            return cls[normalized]
        except KeyError:
            choices = ', '.join(language.cli_name for language in cls)
            raise ValueError(f"unknown language {value!r} (choose from {choices})") from None
