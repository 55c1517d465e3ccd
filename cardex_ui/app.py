"""
The main entry point for the Streamlit web user interface.
"""
import base64
import time

import streamlit as st

from cardex.games import TCG_GAMES, Language, TCGGame
from cardex.services.generation_params import (
    parse_generation_params,
    parse_photo_generation_params,
    serialize_generation_params,
    serialize_photo_generation_params,
)
from cardex.api_models import CardGenerationParams, PhotoCardGenerationParams
from cardex_ui.client import (
    BACKEND_URL,
    POLL_INTERVAL_SECONDS,
    CardexAPIError,
    CardexClient,
    diff_video_statuses,
    download_filename,
    video_status,
)

# --- Configuration ---
PAGES = ["Generate", "From Photo", "Scan", "Grade", "Collection", "Settings"]
STATUS_BADGES = {
    "pending": "",
    "generating": "🎬 Generating video...",
    "completed": "✨ Live",
    "failed": "⚠️ Video failed",
}

# --- Page Setup ---
st.set_page_config(
    page_title="Cardex",
    page_icon="🃏",
    layout="wide",
    initial_sidebar_state="expanded"
)

# --- Session State Initialization ---
if "token" not in st.session_state: st.session_state.token = ""
if "profile" not in st.session_state: st.session_state.profile = None
if "generated" not in st.session_state: st.session_state.generated = None
if "video_statuses" not in st.session_state: st.session_state.video_statuses = {}


def get_client() -> CardexClient:
    profile = st.session_state.profile or {}
    return CardexClient(token=st.session_state.token, base_url=BACKEND_URL, user_id=profile.get("id"))


def show_error(error: CardexAPIError) -> None:
    if error.needs_api_key:
        st.warning(f"{error.message} Open **Settings** to add your key.")
    else:
        st.error(error.message)


def to_data_uri(uploaded) -> str:
    encoded = base64.b64encode(uploaded.getvalue()).decode("ascii")
    return f"data:{uploaded.type or 'image/png'};base64,{encoded}"


def option_index(options: list, value, default: int = 0) -> int:
    """Position of a pre-filled value in a selectbox, falling back for unknown values."""
    return options.index(value) if value in options else default


def stats_inputs(game: TCGGame, defaults: dict, key: str) -> dict:
    """One input per stat of the game, pre-filled from the game's defaults."""
    stats = {}
    base = {**TCG_GAMES[game].default_stats, **defaults}
    columns = st.columns(2)
    for i, (name, value) in enumerate(base.items()):
        with columns[i % 2]:
            if isinstance(value, bool):
                stats[name] = st.checkbox(name, value=value, key=f"{key}-{name}")
            elif isinstance(value, int):
                stats[name] = int(st.number_input(name, value=value, step=1, key=f"{key}-{name}"))
            else:
                stats[name] = st.text_input(name, value=str(value), key=f"{key}-{name}")
    return stats


def save_generated(client: CardexClient) -> None:
    generated = st.session_state.generated
    if not generated:
        return
    st.image(base64.b64decode(generated["imageBase64"]), width=360)
    with st.expander("Prompt"):
        st.write(generated["prompt"])
    if st.button("Save to collection", key="save-generated"):
        with st.spinner("Saving your card..."):
            try:
                card_id = client.save_card(generated["card"])
                st.toast("Card saved to your collection!")
                st.session_state.generated = None
                st.info(f"Saved as `{card_id}`.")
            except CardexAPIError as e:
                show_error(e)


def download_button(client: CardexClient, label: str, url: str, card_name: str, key: str) -> None:
    try:
        data, content_type = client.download(url)
    except CardexAPIError as e:
        st.caption(f"{label}: {e.message}")
        return
    st.download_button(
        label, data=data, file_name=download_filename(card_name, content_type), mime=content_type, key=key,
    )


def card_detail(client: CardexClient, card_id: str) -> None:
    """One card with its downloads, a share link and the metadata form."""
    st.link_button("← Back to collection", "?page=Collection")
    try:
        card = client.get_card(card_id)
    except CardexAPIError as e:
        st.error(f"Could not load this card: {e.message}")
        return

    st.header(card["name"])
    left, right = st.columns(2)
    with left:
        if card.get("videoUrl"):
            st.video(card["videoUrl"])
        st.image(card["imageUrl"], use_container_width=True)
    with right:
        st.caption(f"{card.get('set') or '-'} · {card.get('rarity') or '-'} · {STATUS_BADGES[video_status(card)]}")
        download_button(client, "Download image", card["imageUrl"], card["name"], f"dl-image-{card_id}")
        if card.get("videoUrl"):
            download_button(client, "Download video", card["videoUrl"], card["name"], f"dl-video-{card_id}")
        st.write("Share")
        st.code(card["imageUrl"], language=None)

        with st.form("edit_card_form"):
            name = st.text_input("Name", value=card["name"])
            set_name = st.text_input("Set", value=card.get("set") or "")
            rarity = st.text_input("Rarity", value=card.get("rarity") or "")
            if st.form_submit_button("Save changes", use_container_width=True):
                if not name.strip():
                    st.error("The card needs a name.")
                else:
                    try:
                        client.update_card(card_id, {"name": name.strip(), "set": set_name, "rarity": rarity})
                        st.toast("Card updated.")
                        st.rerun()
                    except CardexAPIError as e:
                        show_error(e)


# =============================================================================
# Sidebar
# =============================================================================
with st.sidebar:
    st.header("Account")
    token = st.text_input("API token", value=st.session_state.token, type="password")
    if token and token != st.session_state.token:
        st.session_state.token = token
        try:
            client = CardexClient(token=token, base_url=BACKEND_URL)
            client.sync_profile()
            st.session_state.profile = client.get_profile()
        except CardexAPIError as e:
            st.session_state.profile = None
            st.error(e.message)
    if st.session_state.profile:
        st.success(f"Signed in as `{st.session_state.profile['id']}`")
    page = st.radio("Go to", PAGES, index=option_index(PAGES, st.query_params.get("page")))

st.title("Cardex 🃏")

if not st.session_state.profile:
    st.info("Enter your API token in the sidebar to start.")
    st.stop()

client = get_client()

# =============================================================================
# Generate
# =============================================================================
if page == "Generate":
    st.header("Generate a card")
    prefill = parse_generation_params(st.query_params.to_dict())
    game = st.selectbox(
        "Game", list(TCGGame), index=option_index([g.value for g in TCGGame], prefill.get("game")),
        format_func=lambda g: TCG_GAMES[g].name,
    )
    with st.form("generate_form"):
        config = TCG_GAMES[game]
        character_name = st.text_input("Character name", value=prefill.get("characterName", ""))
        type_default = prefill.get("characterType", config.types[0])
        character_type = st.selectbox("Type", config.types, index=option_index(config.types, type_default))
        character_description = st.text_area("Character description", value=prefill.get("characterDescription", ""))
        background_description = st.text_area("Background", value=prefill.get("backgroundDescription", ""))
        language = st.selectbox(
            "Language", list(Language),
            index=option_index([l.value for l in Language], prefill.get("language")),
            format_func=lambda l: l.value.title(),
        )
        col1, col2 = st.columns(2)
        with col1:
            is_holo = st.checkbox("Holo", value=prefill.get("isHolo", False))
        with col2:
            is_illustration_rare = st.checkbox("Illustration rare", value=prefill.get("isIllustrationRare", False))
        st.write("Stats")
        stats = stats_inputs(game, prefill.get("stats", {}), "gen")
        submitted = st.form_submit_button("Generate", use_container_width=True)

    if submitted:
        params = {
            "game": game.value,
            "characterName": character_name,
            "characterType": character_type,
            "characterDescription": character_description,
            "backgroundDescription": background_description,
            "language": language.value,
            "isHolo": is_holo,
            "isIllustrationRare": is_illustration_rare,
            "stats": stats,
        }
        with st.spinner("Generating your card... this can take a minute."):
            try:
                result = client.generate_card(params)
                st.session_state.generated = {
                    **result,
                    "card": {
                        "name": character_name,
                        "set": "Cardex Originals",
                        "rarity": "Illustration Rare" if is_illustration_rare else "Rare",
                        "game": game.value,
                        "imageBase64": result["imageBase64"],
                        "isGenerated": True,
                        "prompt": result["prompt"],
                        "generationParams": params,
                    },
                }
            except CardexAPIError as e:
                show_error(e)
    save_generated(client)

# =============================================================================
# From Photo
# =============================================================================
elif page == "From Photo":
    st.header("Turn a photo into a card")
    prefill = parse_photo_generation_params(st.query_params.to_dict())
    with st.form("photo_form"):
        photo = st.file_uploader("Photo", type=["png", "jpg", "jpeg", "webp"])
        game = st.selectbox(
            "Game", list(TCGGame), index=option_index([g.value for g in TCGGame], prefill.get("game")),
            format_func=lambda g: TCG_GAMES[g].name,
        )
        character_name = st.text_input("Character name", value=prefill.get("characterName", ""))
        character_type = st.text_input("Type", value=prefill.get("characterType", ""))
        style_description = st.text_area("Style", value=prefill.get("styleDescription", ""))
        submitted = st.form_submit_button("Generate", use_container_width=True)

    if submitted:
        if photo is None:
            st.error("Please upload a photo.")
        else:
            params = {
                "game": game.value,
                "characterName": character_name,
                "characterType": character_type,
                "styleDescription": style_description,
                "stats": prefill.get("stats", {}),
            }
            with st.spinner("Transforming your photo..."):
                try:
                    result = client.generate_card_from_photo({**params, "photoDataUri": to_data_uri(photo)})
                    st.session_state.generated = {
                        **result,
                        "card": {
                            "name": character_name,
                            "set": "Photo Cards",
                            "rarity": "Rare",
                            "game": game.value,
                            "imageBase64": result["imageBase64"],
                            "isPhotoGenerated": True,
                            "prompt": result["prompt"],
                            "photoGenerationParams": params,
                        },
                    }
                except CardexAPIError as e:
                    show_error(e)
    save_generated(client)

# =============================================================================
# Scan
# =============================================================================
elif page == "Scan":
    st.header("Scan a card")
    photo = st.file_uploader("Card photo", type=["png", "jpg", "jpeg", "webp"])
    if photo is not None and st.button("Scan"):
        with st.spinner("Reading the card..."):
            try:
                details = client.scan_card(to_data_uri(photo))
                st.json(details)
                if details.get("name"):
                    st.write(client.summarize_card(details["name"], details.get("set") or "", details.get("rarity") or ""))
            except CardexAPIError as e:
                show_error(e)

# =============================================================================
# Grade
# =============================================================================
elif page == "Grade":
    st.header("Grade a card")
    with st.form("grade_form"):
        front = st.file_uploader("Front", type=["png", "jpg", "jpeg", "webp"])
        back = st.file_uploader("Back (optional)", type=["png", "jpg", "jpeg", "webp"])
        card_name = st.text_input("Card name (optional)")
        grading_scale = st.selectbox("Grading scale", ["PSA", "BGS", "CGC"])
        submitted = st.form_submit_button("Grade", use_container_width=True)

    if submitted:
        if front is None:
            st.error("Please upload a photo of the front of the card.")
        else:
            request = {"frontPhotoDataUri": to_data_uri(front), "gradingScale": grading_scale}
            if back is not None:
                request["backPhotoDataUri"] = to_data_uri(back)
            if card_name:
                request["cardName"] = card_name
            with st.spinner("Grading..."):
                try:
                    result = client.grade_card(request)
                    st.metric(f"{result['gradingScale']} grade", result["overallGrade"], result["gradeName"])
                    cols = st.columns(4)
                    for col, category in zip(cols, ["centering", "corners", "edges", "surface"]):
                        col.metric(category.title(), result[category]["score"])
                        col.caption(result[category]["notes"])
                    st.write(result["detailedAnalysis"])
                    for tip in result.get("recommendations", []):
                        st.write(f"- {tip}")
                    if result.get("estimatedValue"):
                        st.info(f"Estimated value: {result['estimatedValue']}")
                except CardexAPIError as e:
                    show_error(e)

# =============================================================================
# Collection
# =============================================================================
elif page == "Collection" and st.query_params.get("card"):
    card_detail(client, st.query_params["card"])

elif page == "Collection":
    st.header("My collection")
    try:
        cards = client.list_cards()
    except CardexAPIError as e:
        st.error(f"Could not load your collection: {e.message}")
        if st.button("Retry"):
            st.rerun()
        st.stop()

    for change in diff_video_statuses(st.session_state.video_statuses, cards):
        st.toast(f"**{change.title}** {change.description}")
    st.session_state.video_statuses = {card["id"]: video_status(card) for card in cards}

    if not cards:
        st.info("Your collection is empty. Generate a card to get started!")

    columns = st.columns(3)
    for i, card in enumerate(cards):
        status = video_status(card)
        with columns[i % 3]:
            st.subheader(card["name"])
            if card.get("videoUrl"):
                st.video(card["videoUrl"])
            else:
                st.image(card["imageUrl"], use_container_width=True)
            st.caption(f"{card.get('set') or '-'} · {card.get('rarity') or '-'} · {STATUS_BADGES[status]}")
            st.link_button("Details", f"?page=Collection&card={card['id']}")

            if status in ("pending", "failed"):
                label = "Retry video" if status == "failed" else "Make it live"
                if st.button(label, key=f"video-{card['id']}"):
                    try:
                        client.generate_video(card["id"])
                        st.toast("Video generation started!")
                        st.rerun()
                    except CardexAPIError as e:
                        show_error(e)

            if card.get("generationParams"):
                params = CardGenerationParams.model_validate(card["generationParams"])
                st.link_button("Edit & regenerate", f"?page=Generate&{serialize_generation_params(params)}")
            elif card.get("photoGenerationParams"):
                params = PhotoCardGenerationParams.model_validate(card["photoGenerationParams"])
                st.link_button("Edit & regenerate", f"?page=From+Photo&{serialize_photo_generation_params(params)}")

            if st.button("Delete", key=f"delete-{card['id']}"):
                try:
                    client.delete_card(card["id"])
                    st.toast("Card deleted.")
                    st.rerun()
                except CardexAPIError as e:
                    show_error(e)

    # Keep polling only while some video is still being made.
    if any(video_status(card) == "generating" for card in cards):
        time.sleep(POLL_INTERVAL_SECONDS)
        st.rerun()

# =============================================================================
# Settings
# =============================================================================
elif page == "Settings":
    st.header("API keys")
    try:
        status = client.api_key_status()
    except CardexAPIError as e:
        st.error(f"Could not load your key status: {e.message}")
        st.stop()
    st.write(f"OpenAI key stored: {'✅' if status['hasOpenaiKey'] else '❌'}")
    st.write(f"Gemini key stored: {'✅' if status['hasGeminiKey'] else '❌'}")
    for task, available in status["tasks"].items():
        if not available:
            st.warning(f"No key is available for {task} features.")
    with st.form("keys_form", clear_on_submit=True):
        openai_key = st.text_input("OpenAI API key", type="password")
        gemini_key = st.text_input("Gemini API key", type="password")
        if st.form_submit_button("Save keys"):
            try:
                client.update_api_keys(openai_key or None, gemini_key or None)
                st.success("API keys saved.")
            except CardexAPIError as e:
                show_error(e)
