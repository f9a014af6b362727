# =============================================================================
# Folder Name Translator
# =============================================================================
# Rewrites the display names of role folders (Inbox, Sent, Trash...) into
# the caller's locale. Folders without a recognized role keep the name the
# server gave them.
# =============================================================================

import gettext
import logging
from pathlib import Path
from typing import Callable, Iterable

from mailsync.core import Folder, SpecialUse

logger = logging.getLogger(__name__)

# gettext domain of the folder names
TRANSLATION_DOMAIN = "mailsync"

# Untranslated display name of each role
ROLE_DISPLAY_NAMES: dict[SpecialUse, str] = {
    SpecialUse.ALL: "All mail",
    SpecialUse.INBOX: "Inbox",
    SpecialUse.FLAGGED: "Favorites",
    SpecialUse.DRAFTS: "Drafts",
    SpecialUse.SENT: "Sent",
    SpecialUse.ARCHIVE: "Archive",
    SpecialUse.JUNK: "Junk",
    SpecialUse.TRASH: "Trash",
}


def _identity(text: str) -> str:
    return text


class FolderNameTranslator:
    """
    Stateless display-name rewrite for role folders.

    Attributes:
        translate: Maps an English role name to the display string.
                   Missing translations must return the input unchanged.
    """

    def __init__(self, translate: Callable[[str], str] | None = None) -> None:
        self.translate = translate or _identity

    @classmethod
    def for_locale(cls, locale: str, localedir: Path | None = None) -> "FolderNameTranslator":
        """
        Build a translator from a gettext catalog.

        An empty locale, or a locale without a catalog, translates nothing.
        """
        if not locale:
            return cls()

        translation = gettext.translation(
            TRANSLATION_DOMAIN,
            localedir=localedir,
            languages=[locale],
            fallback=True,
        )
        if type(translation) is gettext.NullTranslations:
            logger.debug(f"No folder name catalog for locale '{locale}'")
        return cls(translation.gettext)

    def translate_all(self, folders: Iterable[Folder]) -> None:
        """Rewrite display names in place, by primary role."""
        for folder in folders:
            name = ROLE_DISPLAY_NAMES.get(folder.primary_role)
            if name is not None:
                folder.display_name = self.translate(name)
