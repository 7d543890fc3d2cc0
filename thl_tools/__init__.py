"""
thl-tools: read and rebuild the MVGL archives and MBE dialogue files of
"The Hundred Line -Last Defense Academy-", keeping every offset consistent
when translated text changes length.
"""

from .dialogue_table import DialogueTable
from .extract_dialogues import DialogueExtractor, LanguageSource
from .mbe import MBEFile
from .mvgl import Archive, Extractor, Packer
from .offset_reader import OffsetReader
from .repack_dialogues import DialogueRepacker

__all__ = ['Archive', 'DialogueExtractor', 'DialogueRepacker', 'DialogueTable',
           'Extractor', 'LanguageSource', 'MBEFile', 'OffsetReader', 'Packer']

__version__ = '1.0.0'
