from mailsync.core import Folder, FolderKind, FolderStatus, SpecialUse, flatten
from mailsync.core.folder import SPECIAL_USE_RANK


def test_regular_folder_id_is_the_mailbox_path() -> None:
    folder = Folder(mailbox="Work/Projects", account_id=1)

    assert folder.folder_id == "Work/Projects"
    assert folder.parent_id == "Work"
    assert folder.leaf_name == "Projects"
    assert folder.display_name == "Projects"


def test_search_folder_id_appends_flagged_suffix() -> None:
    folder = Folder(mailbox="INBOX", account_id=1, kind=FolderKind.VIRTUAL_SEARCH)

    assert folder.folder_id == "INBOX/FLAGGED"
    assert folder.parent_id is None


def test_dot_delimited_and_flat_namespaces() -> None:
    dotted = Folder(mailbox="INBOX.Receipts.2024", account_id=1, delimiter=".")
    flat = Folder(mailbox="Receipts/2024", account_id=1, delimiter=None)

    assert dotted.parent_id == "INBOX.Receipts"
    assert dotted.leaf_name == "2024"
    assert flat.parent_id is None
    assert flat.leaf_name == "Receipts/2024"


def test_noselect_is_matched_case_insensitively() -> None:
    assert not Folder(mailbox="Archive", account_id=1, attributes=["\\NoSelect"]).is_selectable
    assert not Folder(mailbox="Gone", account_id=1, attributes=["\\NonExistent"]).is_selectable
    assert Folder(mailbox="INBOX", account_id=1, attributes=["\\HasChildren"]).is_selectable


def test_unranked_folders_sort_after_every_role() -> None:
    plain = Folder(mailbox="Work", account_id=1)
    unknown = Folder(mailbox="Odd", account_id=1, special_use=[SpecialUse.UNKNOWN])
    trash = Folder(mailbox="Trash", account_id=1, special_use=[SpecialUse.TRASH])

    assert plain.sort_rank == len(SPECIAL_USE_RANK)
    assert unknown.sort_rank == plain.sort_rank
    assert trash.sort_rank < plain.sort_rank


def test_primary_role_is_the_first_role() -> None:
    folder = Folder(mailbox="Stuff", account_id=1)
    folder.add_special_use(SpecialUse.ARCHIVE)
    folder.add_special_use(SpecialUse.ALL)
    folder.add_special_use(SpecialUse.ARCHIVE)

    assert folder.special_use == [SpecialUse.ARCHIVE, SpecialUse.ALL]
    assert folder.primary_role is SpecialUse.ARCHIVE
    assert folder.has_role(SpecialUse.ALL)


def test_search_folder_never_adopts_children() -> None:
    search = Folder(mailbox="INBOX", account_id=1, kind=FolderKind.VIRTUAL_SEARCH)
    inbox = Folder(mailbox="INBOX", account_id=1)

    search.add_folder(Folder(mailbox="INBOX/Sub", account_id=1))
    inbox.add_folder(search)

    assert search.children == []
    assert inbox.children == []


def test_flatten_walks_depth_first() -> None:
    root = Folder(mailbox="A", account_id=1)
    child = Folder(mailbox="A/B", account_id=1)
    grandchild = Folder(mailbox="A/B/C", account_id=1)
    child.add_folder(grandchild)
    root.add_folder(child)
    other = Folder(mailbox="D", account_id=1)

    assert [f.mailbox for f in flatten([root, other])] == ["A", "A/B", "A/B/C", "D"]


def test_str_shows_unread_count() -> None:
    folder = Folder(mailbox="INBOX", account_id=1, status=FolderStatus(total=10, unseen=3))

    assert str(folder) == "INBOX (3)"
    assert str(Folder(mailbox="Sent", account_id=1)) == "Sent"


def test_status_from_parsed_response() -> None:
    status = FolderStatus.from_dict({"MESSAGES": 4, "UIDVALIDITY": 7, "UIDNEXT": 9})

    assert status.total == 4
    assert status.unseen == 0
    assert status.uidvalidity == 7
    assert status.uidnext == 9
    assert status.highest_modseq is None
