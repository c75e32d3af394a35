from rollrelay.agent.initiative import (
    FreeformInitiativeParser,
    InitiativeDeclaration,
    InitiativeWatcher,
    InlineRollInitiativeParser,
    is_announcement,
    parse_initiative,
)
from rollrelay.agent.tabletop import ChatEntry, ChatLog, InlineRoll


def test_inline_roll_template_with_initiative_title_is_parsed() -> None:
    entry = ChatEntry(
        text="rolls",
        speaker="Aria",
        title="Goblin Boss - Initiative",
        inline_rolls=(InlineRoll(formula="1d20+2", total=17),),
    )

    assert InlineRollInitiativeParser().parse(entry) == InitiativeDeclaration(name="Goblin Boss", value=17)


def test_inline_roll_falls_back_to_the_speaker() -> None:
    entry = ChatEntry(
        text="Initiative",
        speaker="Aria",
        inline_rolls=(InlineRoll(formula="1d20", total=3), InlineRoll(formula="1d20+4", total=12)),
    )

    assert InlineRollInitiativeParser().parse(entry) == InitiativeDeclaration(name="Aria", value=12)


def test_inline_roll_without_initiative_caption_is_ignored() -> None:
    entry = ChatEntry(text="Attack", speaker="Aria", inline_rolls=(InlineRoll(formula="1d20", total=12),))

    assert InlineRollInitiativeParser().parse(entry) is None


def test_freeform_phrasings_are_recognized() -> None:
    parser = FreeformInitiativeParser()

    assert parser.parse(ChatEntry(text="Thorin rolls initiative: 14")) == InitiativeDeclaration("Thorin", 14)
    assert parser.parse(ChatEntry(text="Goblin 2 - initiative 9")) == InitiativeDeclaration("Goblin 2", 9)
    assert parser.parse(ChatEntry(text="Initiative for Mira: 21")) == InitiativeDeclaration("Mira", 21)
    assert parser.parse(ChatEntry(text="Nice weather today")) is None


def test_announcements_are_never_ingested() -> None:
    assert is_announcement("🎯 It's Thorin's turn")
    assert is_announcement("⚔️ Combat started")
    assert parse_initiative(ChatEntry(text="🔄 Round 2 - initiative 5")) is None


def test_out_of_range_values_are_discarded() -> None:
    assert parse_initiative(ChatEntry(text="Thorin rolls initiative: 51")) is None
    assert parse_initiative(ChatEntry(text="Thorin rolls initiative: -1")) is None
    assert parse_initiative(ChatEntry(text="Thorin rolls initiative: 50")).value == 50


def test_watcher_forwards_declarations_until_stopped() -> None:
    chat_log = ChatLog()
    seen: list[InitiativeDeclaration] = []
    watcher = InitiativeWatcher(chat_log, seen.append)

    watcher.start()
    chat_log.append(ChatEntry(text="Thorin rolls initiative: 14"))
    chat_log.append(ChatEntry(text="🎯 It's Thorin's turn"))
    watcher.stop()
    chat_log.append(ChatEntry(text="Mira rolls initiative: 8"))

    assert seen == [InitiativeDeclaration("Thorin", 14)]
    assert chat_log.listener_count == 0
