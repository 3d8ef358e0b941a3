"""
Language-specific prompts, system instructions and user-facing messages for StoryForge.
Lookups are cached since the tables never change at runtime.
"""

from functools import lru_cache
from typing import Dict

DEFAULT_LANGUAGE = "ar"

# Language configurations with metadata
LANGUAGE_CONFIGS = {
    "ar": {
        "name": "Arabic",
        "rtl": True,
        "family": "afro-asiatic"
    },
    "en": {
        "name": "English",
        "rtl": False,
        "family": "germanic"
    },
}

_SYSTEM_INSTRUCTIONS = {
    "ar": (
        "أنت StoryForge AI، نظام احترافي لإنشاء القصص السينمائية العربية.\n"
        "مهمتك كتابة قصص عربية طويلة وغامرة، مُحسَّنة للتعليق الصوتي على يوتيوب والسرد البصري.\n"
        "اكتب باللغة العربية فقط، بأسلوب سينمائي، عاطفي، وسلس.\n\n"
        "قواعد القصة:\n"
        "1. القصة الكاملة تتكون من 20 فصلاً متواصلاً.\n"
        "2. تُقسَّم القصة إلى 5 حلقات، كل حلقة تحتوي على 4 فصول.\n"
        "3. اكتب بتدفق سردي سلس بدون عناوين فصول أو أرقام.\n"
        "4. حافظ على استمرارية قوية بين الحلقات.\n"
        "5. قدّم الأحداث المستقبلية أو الافتراضية بوضوح على أنها لم تحدث بعد."
    ),
    "en": (
        "You are StoryForge AI, a professional system for cinematic long-form stories.\n"
        "Write long, immersive stories optimized for YouTube voice-over and visual narration.\n"
        "Write in a cinematic, emotional and fluent style.\n\n"
        "Story rules:\n"
        "1. The full story has 20 continuous chapters.\n"
        "2. It is split into 5 episodes of 4 chapters each.\n"
        "3. Write as flowing narration without chapter titles or numbers.\n"
        "4. Keep strong continuity between episodes.\n"
        "5. Present future or hypothetical events clearly as not having happened yet."
    ),
}

_PROMPTS = {
    "ar": {
        "outline": (
            'قم بإنشاء مخطط تفصيلي لقصة ملحمية من 20 فصلاً، مقسمة إلى {episode_count} حلقات، '
            'بناءً على الفكرة التالية: "{prompt}". يجب أن يكون المخطط مفصلاً بما يكفي لتوجيه '
            'كتابة كل حلقة بشكل مستقل مع الحفاظ على قصة متماسكة.'
        ),
        "episode": (
            'بناءً على الفكرة الأصلية للقصة: "{prompt}" والمخطط التفصيلي التالي:\n\n{outline}\n\n---\n'
            'اكتب الآن الحلقة {number} من القصة، والتي تغطي الفصول من {chapter_start} إلى {chapter_end}. '
            'اكتب بأسلوب سينمائي درامي باللغة العربية الفصحى، بدون عناوين للفصول أو أرقام.'
        ),
        "seo": (
            'بناءً على نص الحلقة {number} من قصة "{prompt}"، أنشئ محتوى SEO محسناً ليوتيوب: '
            'عنواناً جذاباً، ووصفاً مشوقاً، وقائمة من 10-15 كلمة مفتاحية.\n\n---\n{excerpt}\n---'
        ),
        "trending": (
            "بصفتك خبيراً في اتجاهات يوتيوب، حدد أفضل 3 مفاهيم قصصية ضمن النوع '{genre}' "
            "والفئة الفرعية '{sub_category}'. لكل اقتراح قدم: العنوان، نبذة مختصرة، "
            "3 أسباب موثقة للشعبية، و5-7 كلمات مفتاحية ليوتيوب. اعتمد على معلومات موثقة فقط."
        ),
    },
    "en": {
        "outline": (
            'Create a detailed outline for an epic 20-chapter story split into {episode_count} episodes, '
            'based on this idea: "{prompt}". The outline must guide each episode independently '
            'while keeping one coherent story.'
        ),
        "episode": (
            'Based on the original story idea: "{prompt}" and this outline:\n\n{outline}\n\n---\n'
            'Now write episode {number}, covering chapters {chapter_start} to {chapter_end}. '
            'Use a cinematic, dramatic style without chapter titles or numbers.'
        ),
        "seo": (
            'From the text of episode {number} of the story "{prompt}", produce YouTube SEO content: '
            'a compelling title, an engaging description and a list of 10-15 tags.\n\n---\n{excerpt}\n---'
        ),
        "trending": (
            "As a YouTube trends strategist, identify the top 3 story concepts in the genre '{genre}' "
            "and sub-category '{sub_category}'. For each give a title, a one-paragraph synopsis, "
            "3 evidence-based popularity reasons and 5-7 YouTube keywords. Use documented facts only."
        ),
    },
}

# Visual prompts are always requested in English, whatever the story language.
_VISUAL_PROMPTS = {
    "scene_prompts": (
        "Analyze the following episode text. Identify {count} distinct, key visual moments that would be "
        "powerful as cinematic images. For each scene, write a detailed image generation prompt in English "
        "describing characters, setting, lighting, mood and action. Return a JSON object with a key "
        "\"prompts\" containing an array of exactly {count} strings.\n\n---\n{excerpt}\n---"
    ),
    "storyboard": (
        "Break the following story text into a sequence of distinct visual scenes, each suitable for an "
        "{seconds}-second video clip. You must generate exactly {count} scenes. For each scene write a "
        "cinematic video generation prompt in English describing setting, characters, action, camera "
        "movement and mood. Return a JSON object with a key \"prompts\" containing an array of exactly "
        "{count} strings.\n\n---\n{excerpt}\n---"
    ),
    "video_prompt": (
        "Read the following episode text and write one vivid, cinematic video generation prompt in English "
        "for its most striking moment. Describe setting, characters, action, camera movement and mood in a "
        "single paragraph. Return only the prompt.\n\n---\n{excerpt}\n---"
    ),
}

_MESSAGES = {
    "ar": {
        "retry_rate_limited": "تم تجاوز حد الطلبات. سنحاول مرة أخرى بعد {seconds} ثانية... ({attempt}/{max_attempts})",
        "outline_started": "جارٍ إنشاء الخطوط العريضة للقصة...",
        "episode_started": "[{number}/{total}] جارٍ كتابة نص الحلقة...",
        "episode_completed": "[{number}/{total}] اكتملت الحلقة.",
        "seo_started": "[{number}/{total}] جارٍ إنشاء بيانات SEO...",
        "scene_prompts_started": "جارٍ تحليل نص الحلقة {number}...",
        "storyboard_started": "جارٍ إنشاء لوحة قصصية من {count} مشهداً...",
        "image_started": "جارٍ إنشاء الصورة {slot} من {total}...",
        "image_failed": "تعذّر إنشاء الصورة {slot} من {total}.",
        "narration_chunk": "جارٍ إنشاء الجزء {index} من {total}...",
        "video_submitted": "تم إرسال طلب إنشاء الفيديو. جاري انتظار المعالجة...",
        "video_polling": "الفيديو قيد المعالجة، جاري التحقق من الحالة... ({attempt}/{max_attempts})",
        "video_downloading": "اكتملت معالجة الفيديو. جاري التنزيل...",
        "video_done": "تم تنزيل الفيديو بنجاح.",
        "slideshow_payload": "جارٍ إنشاء حمولة الفيديو...",
        "slideshow_status": "محاولة التحقق {attempt}: الحالة هي {status}",
        "slideshow_retry": "فشل التحقق من الحالة: {error}. المحاولة مرة أخرى...",
        "slideshow_done": "اكتمل تصيير الفيديو بنجاح!",
        "invalid_api_key": "مفتاح Gemini API غير صالح. يرجى التحقق منه والمحاولة مرة أخرى.",
        "quota_exceeded": "تم استنفاد الحصة المتاحة. يرجى التحقق من خطة الفوترة الخاصة بك.",
        "rate_limited": "تم تجاوز حد الطلبات. يرجى الانتظار قليلاً ثم المحاولة مرة أخرى.",
        "malformed_response": "أعاد الذكاء الاصطناعي استجابة غير متوقعة. يرجى المحاولة مرة أخرى.",
        "video_timeout": "استغرق إنشاء الفيديو وقتاً أطول من المسموح.",
        "storage_permission": "تم رفض الإذن بالوصول إلى المجلد. يرجى منح الإذن أو اختيار مجلد آخر.",
        "stale_folder": "لم يعد المجلد المحدد موجوداً. يرجى اختيار مجلد جديد.",
        "generic_error": "حدث خطأ: {detail}",
        "prompt_required": "الرجاء إدخال فكرة القصة أولاً.",
        "nothing_to_save": "لا توجد قصة لحفظها.",
        "save_in_progress": "عملية حفظ أخرى قيد التنفيذ.",
        "story_saved": "تم حفظ القصة بنجاح!",
        "untitled_story": "قصة بدون عنوان",
        "no_seo": "لا توجد بيانات SEO متاحة.",
        "seo_block": "العنوان: {title}\n\nالوصف: {description}\n\nالكلمات المفتاحية: {tags}",
    },
    "en": {
        "retry_rate_limited": "Rate limit reached. Retrying in {seconds} seconds... ({attempt}/{max_attempts})",
        "outline_started": "Creating the story outline...",
        "episode_started": "[{number}/{total}] Writing episode text...",
        "episode_completed": "[{number}/{total}] Episode complete.",
        "seo_started": "[{number}/{total}] Generating SEO data...",
        "scene_prompts_started": "Analyzing the text of episode {number}...",
        "storyboard_started": "Creating a storyboard of {count} scenes...",
        "image_started": "Generating image {slot} of {total}...",
        "image_failed": "Image {slot} of {total} could not be generated.",
        "narration_chunk": "Generating part {index} of {total}...",
        "video_submitted": "Video request submitted. Waiting for processing...",
        "video_polling": "Video is processing, checking status... ({attempt}/{max_attempts})",
        "video_downloading": "Video processing finished. Downloading...",
        "video_done": "Video downloaded successfully.",
        "slideshow_payload": "Building the video payload...",
        "slideshow_status": "Status check {attempt}: status is {status}",
        "slideshow_retry": "Status check failed: {error}. Retrying...",
        "slideshow_done": "Video rendering finished!",
        "invalid_api_key": "The Gemini API key is not valid. Please check it and try again.",
        "quota_exceeded": "Your quota is exhausted. Please check your billing plan.",
        "rate_limited": "Too many requests. Please wait a moment and try again.",
        "malformed_response": "The AI returned an unexpected response. Please try again.",
        "video_timeout": "Video generation took longer than allowed.",
        "storage_permission": "Permission to the folder was denied. Grant access or choose another folder.",
        "stale_folder": "The selected folder no longer exists. Please choose a new folder.",
        "generic_error": "An error occurred: {detail}",
        "prompt_required": "Please enter a story idea first.",
        "nothing_to_save": "There is no story to save.",
        "save_in_progress": "Another save is already in progress.",
        "story_saved": "Story saved successfully!",
        "untitled_story": "Untitled story",
        "no_seo": "No SEO data available.",
        "seo_block": "Title: {title}\n\nDescription: {description}\n\nTags: {tags}",
    },
}


def _normalize(language_code: str) -> str:
    return language_code if language_code in LANGUAGE_CONFIGS else DEFAULT_LANGUAGE


@lru_cache(maxsize=16)
def get_system_instruction(language_code: str) -> str:
    """System instruction for story text generation"""
    return _SYSTEM_INSTRUCTIONS[_normalize(language_code)]


@lru_cache(maxsize=16)
def get_language_specific_prompts(language_code: str) -> Dict[str, str]:
    """Prompt templates for the given language, visual prompts included"""
    return {**_PROMPTS[_normalize(language_code)], **_VISUAL_PROMPTS}


def get_message(key: str, language_code: str = DEFAULT_LANGUAGE, **kwargs) -> str:
    """Localized user-facing message, falling back to English for unknown keys"""
    catalog = _MESSAGES[_normalize(language_code)]
    template = catalog.get(key) or _MESSAGES["en"][key]
    return template.format(**kwargs) if kwargs else template


def get_supported_languages() -> Dict[str, str]:
    """Get all supported languages with their display names"""
    return {code: config["name"] for code, config in LANGUAGE_CONFIGS.items()}
