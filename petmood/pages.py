"""HTML rendering helpers for PetMood."""

from __future__ import annotations

import json
import re
from html import escape
from urllib.parse import quote, urlencode

from .config import CTA_VARIANTS, WTP_OPTIONS, get_fb_pixel_id
from .normalizer import NOT_VISIBLE

SMALL_WORDS = {"and", "or", "the", "a", "an", "to", "of", "in", "on", "for", "at", "by", "with", "from"}

SPECIES_PATTERNS = (
    (re.compile(r"\b(cat|feline|siamese|maine coon|ragdoll|tabby)\b"), "Cat"),
    (
        re.compile(
            r"\b(dog|canine|shepherd|retriever|bulldog|poodle|terrier|dachshund|chihuahua|shiba|husky)\b"
        ),
        "Dog",
    ),
    (re.compile(r"\b(bird|parrot|cockatiel|budgie|finch|macaw)\b"), "Bird"),
    (re.compile(r"\b(rabbit|bunny)\b"), "Rabbit"),
    (re.compile(r"\b(hamster|gerbil|guinea pig|ferret)\b"), "Small Pet"),
    (re.compile(r"\b(reptile|lizard|gecko|iguana|snake|python|turtle|tortoise)\b"), "Reptile"),
    (re.compile(r"\b(fish|betta|goldfish|cichlid)\b"), "Fish"),
)

MOOD_CARE_TIPS = (
    (
        ("angry", "anxious", "fearful", "stressed"),
        "Create a calm space: lights low, white noise on; offer a long-lasting chew "
        "for 10-15 minutes to reduce arousal.",
    ),
    (("bored",), "Scatter-feed a quarter cup of kibble across a snuffle mat for scent work and slower eating."),
    (("tired",), "Offer water and a quiet bed; postpone vigorous play and reassess energy in 30 minutes."),
    (("sad",), "Use a lick mat with xylitol-free peanut butter for 5-10 minutes of calming enrichment."),
    (
        ("excited", "playful", "happy", "curious", "alert"),
        "After play, inspect paw pads for abrasions; wipe with pet-safe wipes and let them dry fully.",
    ),
)
FALLBACK_CARE_TIP = (
    "Brush teeth with pet-safe toothpaste tonight (30-60s per side); "
    "book a dental cleaning if tartar is heavy."
)
MIN_CARE_TIP_LENGTH = 24

CTA_COPY = {
    "vet": {
        "desc": "Scan your pet's eyes, fur, and posture for early signs of illness.",
        "button": "Ask AI Vet",
        "event": "CTA_Vet",
        "title": "AI Vet - Coming Soon",
        "landing": "Quick triage: eyes, fur, posture checks and when to see a vet.",
    },
    "trainer": {
        "desc": "Step-by-step guidance to teach tricks like \"Give Paw\" and improve behavior.",
        "button": "Start Training",
        "event": "CTA_Trainer",
        "title": "AI Trainer - Coming Soon",
        "landing": "Structured sessions to teach tricks like \"Give Paw\" and reinforce calm.",
    },
    "tracker": {
        "desc": "Track your pet's emotional well-being over time and spot trends.",
        "button": "Track Mood Over Time",
        "event": "CTA_Tracker",
        "title": "Mood Tracker - Coming Soon",
        "landing": "Track emotional trends and get tips based on weekly patterns.",
    },
    "dna": {
        "desc": "Explore your pet's likely breed and ancestry with AI analysis.",
        "button": "Check Ancestry",
        "event": "CTA_DNA",
        "title": "Ancestry - Coming Soon",
        "landing": "Explore likely lineage and breed traits using AI analysis.",
    },
}
GENERIC_LANDING = {"title": "Coming Soon", "landing": "Stay tuned!"}

BASE_CSS = """
  body { font-family: system-ui, -apple-system, sans-serif; background: #f8fafc; color: #0f172a; margin: 0; }
  main { max-width: 560px; margin: 0 auto; padding: 24px; }
  .card { background: #fff; border: 1px solid #e5e7eb; border-radius: 16px; padding: 20px; margin-bottom: 16px; }
  .btn { display: inline-block; padding: 12px 16px; border-radius: 10px; border: 1px solid #0ea5e9;
         background: linear-gradient(180deg, #38bdf8 0%, #0ea5e9 100%); color: #fff; font-weight: 700;
         text-decoration: none; cursor: pointer; }
  .muted { color: #475569; font-size: 14px; }
  .msg { background: #fef3c7; border: 1px solid #fde68a; border-radius: 10px; padding: 10px 12px; }
  input, select { border: 1px solid #cbd5e1; border-radius: 10px; padding: 10px 12px; }
  img.photo { width: 100%; border-radius: 12px; }
"""

BEACON_JS = """
<script>
  function pmEvent(type, data) {
    try {
      var body = JSON.stringify(Object.assign({ type: type }, data || {}));
      if (navigator.sendBeacon) { navigator.sendBeacon('/api/event', body); return; }
      fetch('/api/event', { method: 'POST', body: body, keepalive: true });
    } catch (e) {}
  }
  function pmTrack(type, data) {
    pmEvent(type, data);
    try { if (typeof fbq === 'function') fbq('trackCustom', type, data || {}); } catch (e) {}
  }
</script>
"""

PIXEL_JS = """
<script>
  !function(f,b,e,v,n,t,s){if(f.fbq)return;n=f.fbq=function(){n.callMethod?
  n.callMethod.apply(n,arguments):n.queue.push(arguments)};if(!f._fbq)f._fbq=n;
  n.push=n;n.loaded=!0;n.version='2.0';n.queue=[];t=b.createElement(e);t.async=!0;
  t.src=v;s=b.getElementsByTagName(e)[0];s.parentNode.insertBefore(t,s)}(window,
  document,'script','https://connect.facebook.net/en_US/fbevents.js');
  fbq('init', '__PIXEL_ID__');
  fbq('track', 'PageView');
</script>
"""


def title_case(text: str) -> str:
    """Title-case display text, keeping small words and acronyms intact."""
    words = []
    for index, word in enumerate(str(text or "").split()):
        if re.fullmatch(r"[A-Z0-9]{2,}", word):
            words.append(word)
            continue
        lowered = word.lower()
        if index > 0 and lowered in SMALL_WORDS:
            words.append(lowered)
            continue
        words.append(lowered[:1].upper() + lowered[1:])
    joined = " ".join(words)
    return re.sub(r"\b(Ai|Usa|Uk|Id)\b", lambda m: m.group(0).upper(), joined)


def species_from_breed(label: str) -> str:
    """Map a breed or species guess to a coarse species name for display."""
    lowered = str(label or "").lower()
    for pattern, species in SPECIES_PATTERNS:
        if pattern.search(lowered):
            return species
    return "Pet"


def pick_care_tip(care: dict | None, emotion_label: str) -> str:
    """Choose one concrete care tip, falling back to a mood-specific one."""
    care = care if isinstance(care, dict) else {}
    for key in ("teeth", "paws", "eyes"):
        tip = str(care.get(key) or "").strip()
        if len(tip) >= MIN_CARE_TIP_LENGTH and NOT_VISIBLE.lower() not in tip.lower():
            return tip
    mood = str(emotion_label or "").lower()
    for moods, tip in MOOD_CARE_TIPS:
        if any(m in mood for m in moods):
            return tip
    return FALLBACK_CARE_TIP


def _pixel_head() -> str:
    """Return the Facebook Pixel snippet when a pixel id is configured."""
    pixel_id = get_fb_pixel_id()
    if not pixel_id:
        return ""
    return PIXEL_JS.replace("__PIXEL_ID__", pixel_id)


def _page(title: str, body: str, extra_head: str = "") -> bytes:
    extra_head = _pixel_head() + extra_head
    return f"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1" />
  <title>{escape(title)}</title>
  <style>{BASE_CSS}</style>
  {extra_head}
</head>
<body>
<main>
{body}
</main>
</body>
</html>
""".encode("utf-8")


def _message_block(message: str | None) -> str:
    return f'<p class="msg">{escape(message)}</p>' if message else ""


def render_join_page(
    message: str | None = None,
    next_path: str = "/",
    email_value: str = "",
) -> bytes:
    """Render the email-capture page shown before the first upload."""
    body = f"""
<div class="card">
  <h1>PetMood AI</h1>
  <p class="muted">Enter your email to read your pet's mood from a photo.</p>
  {_message_block(message)}
  <form method="post" action="/api/session">
    <input type="hidden" name="next" value="{escape(next_path)}" />
    <input type="email" name="email" required placeholder="you@example.com" value="{escape(email_value)}" />
    <button class="btn" type="submit">Continue</button>
  </form>
</div>
"""
    return _page("Join PetMood", body)


def render_home_page(email: str, message: str | None = None) -> bytes:
    """Render the upload form."""
    body = f"""
<div class="card">
  <h1>How is your pet feeling?</h1>
  <p class="muted">Signed in as {escape(email)}.</p>
  {_message_block(message)}
  <form method="post" action="/analyze" enctype="multipart/form-data">
    <input type="file" name="image" accept="image/*" required />
    <button class="btn" type="submit">Analyze</button>
  </form>
  <form method="post" action="/signout">
    <input type="hidden" name="next" value="/join" />
    <button type="submit">Sign out</button>
  </form>
</div>
"""
    return _page("PetMood AI", body)


def _cta_cards(upload_id: str) -> str:
    cards = []
    for variant in CTA_VARIANTS:
        copy = CTA_COPY[variant]
        href = f"/learn-more/{variant}?{urlencode({'u': upload_id})}"
        event_data = escape(json.dumps({"variant": variant, "uploadId": upload_id}))
        click_event = escape(json.dumps(f"{copy['event']}_Click"))
        cards.append(
            f"""
  <div class="card" data-impression="{escape(copy['event'])}_Impression" data-event="{event_data}">
    <p class="muted">{escape(copy['desc'])}</p>
    <a class="btn" href="{escape(href)}" onclick='pmTrack({click_event}, {event_data})'>{escape(copy['button'])}</a>
  </div>"""
        )
    return "".join(cards)


def render_result_page(payload: dict) -> bytes:
    """Render an analysis payload returned by the upload pipeline."""
    emotion = payload.get("emotion") or {}
    breed = payload.get("breed_guess") or {}
    emotion_label = str(emotion.get("label") or "")
    breed_label = title_case(str(breed.get("label") or ""))
    species = species_from_breed(breed_label)
    confidence = round(float(emotion.get("confidence") or 0) * 100)
    upload_id = str(payload.get("uploadId") or "")

    links = [link for link in (payload.get("cta_links") or []) if isinstance(link, dict)]
    sections: list[str] = []
    activity = str(payload.get("activity_suggestion") or "")
    if activity:
        sections.append(f"<p><strong>Try this:</strong> {escape(activity)}</p>")
    toy_items = [
        f'<li><a href="{escape(str(link.get("url") or ""))}" rel="nofollow sponsored">'
        f"{escape(title_case(str(link.get('label') or '')))}</a></li>"
        for link in links[:-1]
    ]
    if toy_items:
        sections.append("<p><strong>Toy ideas</strong></p><ul>" + "".join(toy_items) + "</ul>")
    if links:
        treat = links[-1]
        sections.append(
            f'<p><a href="{escape(str(treat.get("url") or ""))}" rel="nofollow sponsored">'
            f"{escape(str(treat.get('label') or ''))}</a></p>"
        )
    care_tip = pick_care_tip(payload.get("care"), emotion_label)
    image_url = str(payload.get("imageUrl") or "")
    details = "\n  ".join(sections)

    body = f"""
<div class="card">
  <img class="photo" src="{escape(image_url)}" alt="Your pet" />
  <h1>Your {escape(species)} feels {escape(emotion_label)}</h1>
  <p class="muted">Confidence {confidence}%. Breed guess: {escape(breed_label)}.</p>
  {details}
  <p><strong>Care tip:</strong> {escape(care_tip)}</p>
  <a href="/">Analyze another photo</a>
</div>
{_cta_cards(upload_id)}
<script>
  document.querySelectorAll('[data-impression]').forEach(function (el) {{
    pmTrack(el.getAttribute('data-impression'), JSON.parse(el.getAttribute('data-event')));
  }});
</script>
"""
    return _page("Your PetMood result", body, extra_head=BEACON_JS)


def render_learn_more_page(
    variant: str,
    upload_id: str = "",
    message: str | None = None,
) -> bytes:
    """Render a CTA landing page with the willingness-to-pay question."""
    copy = CTA_COPY.get(variant, GENERIC_LANDING)
    options = "".join(
        f"<option>{escape(option)}</option>" for option in WTP_OPTIONS
    )
    land_data = escape(json.dumps({"variant": variant, "uploadId": upload_id}))
    body = f"""
<div class="card">
  <h1>{escape(copy['title'])}</h1>
  <p class="muted">{escape(copy['landing'])}</p>
  {_message_block(message)}
  <form method="post" action="/learn-more/{quote(variant)}">
    <input type="hidden" name="u" value="{escape(upload_id)}" />
    <label for="price"><strong>Would you pay for this?</strong></label>
    <select id="price" name="price">
      <option value="">Select one...</option>
      {options}
    </select>
    <button class="btn" type="submit">Submit</button>
  </form>
  <p><a href="/">&larr; Back to app</a></p>
</div>
<div id="land" data-event="{land_data}"></div>
<script>pmEvent('CTA_Land', JSON.parse(document.getElementById('land').getAttribute('data-event')));</script>
"""
    return _page(copy["title"], body, extra_head=BEACON_JS)
