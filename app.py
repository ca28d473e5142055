#!/usr/bin/env python3
"""
Vietnamese Learning App - Flask JSON API
Flashcards with spaced repetition, lesson exercises, progress statistics and
an AI tutor grounded on a grammar and folklore knowledge base.
"""

import os
import sys
import tempfile
import traceback
import argparse
from typing import List, Optional, Dict, Any, Tuple

from flask import Flask, request, session, jsonify
from werkzeug.utils import secure_filename

from openai import OpenAI

# Check for test mode
TEST_MODE = os.environ.get("TEST_MODE", "0") == "1"
MAX_COMPLETION_TOKENS = 32768

# Global variables for AI clients
client = None
ai_model = None
study_ai_model = None

# Add the current directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from llm_learn_vietnamese import (
    db, flashcards, review, practice, unlock, statistics, rag, chat,
)

# Check for debug mode
DEBUG = os.environ.get("DEBUG", "0") == "1"


class OpenAIModel:
    """Wrapper for OpenAI API to match expected interface."""
    def __init__(self, client: Any, model_name: str = "gpt-5.2"):
        self.client = client
        self.model_name = model_name

    def prompt(self, prompt_text: str, system: str = "") -> Any:
        """Send prompt to OpenAI and return response."""
        messages: List[Dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt_text})

        if DEBUG:
            print(f"🤖 OpenAI API Call Details:")
            print(f"   Model: {self.model_name}")
            print(f"   System prompt length: {len(system) if system else 0} characters")
            print(f"   User prompt length: {len(prompt_text)} characters")

        try:
            response = self.client.chat.completions.create(
                model=self.model_name,
                messages=messages,  # type: ignore
                temperature=1.0,
                max_completion_tokens=MAX_COMPLETION_TOKENS,
            )
            content = response.choices[0].message.content or ""

            if DEBUG:
                print(f"✅ OpenAI API Response: {len(content)} characters, usage {response.usage}")

            class Response:
                def __init__(self, content: str) -> None:
                    self.content = content
                def text(self) -> str:
                    return self.content

            return Response(content)

        except Exception as e:
            if DEBUG:
                print(f"❌ OpenAI API call failed: {str(e)}")
            raise


def init_ai(api_key: Optional[str] = None,
            base_url: Optional[str] = None,
            model_name: str = "gpt-5.2",
            study_model_name: Optional[str] = None,
            embedding_model_name: Optional[str] = None) -> None:
    """Initialize the OpenAI client, the chat models and the embeddings client."""
    global client, ai_model, study_ai_model

    if TEST_MODE:
        return

    if not api_key:
        api_key = os.environ.get("OPENAI_API_KEY")

    if not api_key:
        print("Warning: No API key provided. AI features will be disabled.")
        return

    try:
        client_kwargs = {"api_key": api_key}
        if base_url:
            client_kwargs["base_url"] = base_url

        client = OpenAI(**client_kwargs)

        ai_model = OpenAIModel(client, model_name=model_name)
        study_ai_model = OpenAIModel(client, model_name=study_model_name or model_name)
        db.set_embedding_client(client, embedding_model_name)

        print(f"✅ AI initialized with model: {model_name}")
        if study_model_name and study_model_name != model_name:
            print(f"✅ Study AI initialized with model: {study_model_name}")

    except Exception as e:
        print(f"❌ Failed to initialize AI: {e}")


app = Flask(__name__)
app.secret_key = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')
app.config['MAX_CONTENT_LENGTH'] = 16 * 1024 * 1024  # 16MB max upload

if not TEST_MODE:
    init_ai()

ALLOWED_EXTENSIONS = {'csv'}


def allowed_file(filename: str) -> bool:
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


@app.before_request
def initialize_app() -> None:
    """Initialize the database if needed."""
    if not hasattr(app, '_database_initialized'):
        try:
            if not db.is_db_initialized():
                db.init_db()
                print("✅ Database initialized on startup")
        except Exception as e:
            print(f"❌ Database startup check failed: {str(e)}")
        setattr(app, "_database_initialized", True)


@app.before_request
def ensure_username() -> None:
    """Ensure username is set in session."""
    if 'username' not in session:
        session['username'] = 'default_user'


def current_user() -> str:
    return session.get('username', 'default_user')


def success(payload: Optional[Dict[str, Any]] = None, code: int = 200) -> Tuple[Any, int]:
    body = {'status': 'success'}
    body.update(payload or {})
    return jsonify(body), code


def not_found(message: str) -> Tuple[Any, int]:
    return jsonify({'status': 'error', 'message': message}), 404


def error_response(e: Exception, context: str) -> Tuple[Any, int]:
    """Map a library exception to a JSON error: 400 invalid, 404 missing, 500 otherwise."""
    if isinstance(e, ValueError):
        return jsonify({'status': 'error', 'message': str(e)}), 400
    if isinstance(e, LookupError):
        return not_found(str(e).strip("'\""))
    print(f"❌ Error {context}: {e}")
    if DEBUG:
        traceback.print_exc()
    return jsonify({'status': 'error', 'message': f'Error: {str(e)}'}), 500


def json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def arg_bool(name: str) -> bool:
    return request.args.get(name, 'false').lower() in ('1', 'true', 'yes')


@app.route('/api/health')
def api_health() -> Any:
    return jsonify({'status': 'ok', 'database': db.is_db_initialized(), 'test_mode': TEST_MODE})


@app.route('/ai_status')
def ai_status() -> Any:
    """Which AI features are available."""
    return jsonify({
        'status': 'success',
        'ai_enabled': ai_model is not None,
        'model': getattr(ai_model, 'model_name', None),
        'study_model': getattr(study_ai_model, 'model_name', None),
        'embedding_model': db.EMBEDDING_MODEL,
    })


# ----------------------------------------------------------------------
# Flashcard catalog
# ----------------------------------------------------------------------

@app.route('/api/flashcards')
def api_flashcards() -> Any:
    try:
        skip = request.args.get('skip', 0, type=int)
        limit = request.args.get('limit', 100, type=int)
        return success({'flashcards': flashcards.get_all_flashcards(skip, limit)})
    except Exception as e:
        return error_response(e, 'listing flashcards')


@app.route('/api/flashcards/<flashcard_id>')
def api_flashcard(flashcard_id: str) -> Any:
    try:
        card = flashcards.get_flashcard(flashcard_id)
        if card is None:
            return not_found('Flashcard not found')
        card['is_saved'] = flashcards.is_flashcard_saved(current_user(), flashcard_id)
        return success({'flashcard': card})
    except Exception as e:
        return error_response(e, 'getting flashcard')


@app.route('/api/flashcards/batch', methods=['POST'])
def api_flashcards_batch() -> Any:
    try:
        ids = json_body().get('ids') or []
        if not isinstance(ids, list):
            raise ValueError("ids must be a list")
        return success({'flashcards': flashcards.get_flashcards_by_ids([str(i) for i in ids])})
    except Exception as e:
        return error_response(e, 'getting flashcards by id')


@app.route('/api/flashcards/random')
def api_flashcards_random() -> Any:
    try:
        count = request.args.get('count', 10, type=int)
        return success({'flashcards': flashcards.get_random_flashcards(count, arg_bool('common_words_only'))})
    except Exception as e:
        return error_response(e, 'getting random flashcards')


@app.route('/api/flashcards/search')
def api_flashcards_search() -> Any:
    try:
        q = request.args.get('q', '')
        limit = request.args.get('limit', 20, type=int)
        return success({'flashcards': flashcards.search_flashcards(q, limit)})
    except Exception as e:
        return error_response(e, 'searching flashcards')


@app.route('/api/flashcards/topics')
def api_flashcard_topics() -> Any:
    try:
        return success({'topics': flashcards.get_topics(request.args.get('complexity'))})
    except Exception as e:
        return error_response(e, 'listing topics')


@app.route('/api/flashcards/topic/<topic>')
def api_flashcards_by_topic(topic: str) -> Any:
    try:
        page = flashcards.get_flashcards_by_topic(
            topic,
            skip=request.args.get('skip', 0, type=int),
            limit=request.args.get('limit', 20, type=int),
            complexity=request.args.get('complexity'),
        )
        return success(page)
    except Exception as e:
        return error_response(e, 'getting flashcards by topic')


@app.route('/api/flashcards/type/<word_type>')
def api_flashcards_by_type(word_type: str) -> Any:
    try:
        limit = request.args.get('limit', 100, type=int)
        return success({'flashcards': flashcards.get_flashcards_by_type(word_type, limit)})
    except Exception as e:
        return error_response(e, 'getting flashcards by type')


@app.route('/api/flashcards/complexity/<complexity>')
def api_flashcards_by_complexity(complexity: str) -> Any:
    try:
        limit = request.args.get('limit', 100, type=int)
        return success({'flashcards': flashcards.get_flashcards_by_complexity(complexity, limit)})
    except Exception as e:
        return error_response(e, 'getting flashcards by complexity')


@app.route('/api/flashcards/others/<kind>')
def api_flashcards_others(kind: str) -> Any:
    try:
        limit = request.args.get('limit', 100, type=int)
        if kind == 'multiword':
            cards = flashcards.get_multiword_flashcards(limit)
        elif kind == 'multimeaning':
            cards = flashcards.get_multimeaning_flashcards(limit)
        else:
            raise ValueError("kind must be 'multiword' or 'multimeaning'")
        return success({'flashcards': cards})
    except Exception as e:
        return error_response(e, 'getting other flashcards')


@app.route('/api/flashcards/counts')
def api_flashcard_counts() -> Any:
    try:
        return success({
            'complexity': flashcards.get_complexity_counts(),
            'word_types': flashcards.get_word_types(),
            'others': flashcards.get_others_counts(),
        })
    except Exception as e:
        return error_response(e, 'counting flashcards')


@app.route('/api/flashcards/<flashcard_id>/similar')
def api_similar_flashcards(flashcard_id: str) -> Any:
    try:
        limit = request.args.get('limit', 5, type=int)
        return success({'flashcards': flashcards.get_similar_flashcards(flashcard_id, limit)})
    except Exception as e:
        return error_response(e, 'getting similar flashcards')


@app.route('/api/flashcards/import', methods=['POST'])
def api_import_flashcards() -> Any:
    """Upload a CSV of catalog flashcards."""
    try:
        if 'file' not in request.files:
            raise ValueError("No file uploaded")
        file = request.files['file']
        if not file.filename or not allowed_file(file.filename):
            raise ValueError("Please upload a .csv file")
        filename = secure_filename(file.filename)
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, filename)
            file.save(path)
            count = flashcards.import_flashcards_csv(path)
        return success({'imported': count})
    except Exception as e:
        return error_response(e, 'importing flashcards')


# ----------------------------------------------------------------------
# Saved and custom flashcards
# ----------------------------------------------------------------------

@app.route('/api/saved-flashcards')
def api_saved_flashcards() -> Any:
    try:
        return success({'flashcards': flashcards.get_saved_flashcards(current_user())})
    except Exception as e:
        return error_response(e, 'listing saved flashcards')


@app.route('/api/saved-flashcards/<flashcard_id>/toggle', methods=['POST'])
def api_toggle_saved(flashcard_id: str) -> Any:
    try:
        if flashcards.get_flashcard(flashcard_id) is None:
            return not_found('Flashcard not found')
        saved = flashcards.toggle_saved_flashcard(current_user(), flashcard_id)
        return success({'flashcard_id': flashcard_id, 'is_saved': saved})
    except Exception as e:
        return error_response(e, 'toggling saved flashcard')


@app.route('/api/custom-flashcards', methods=['GET', 'POST'])
def api_custom_flashcards() -> Any:
    try:
        if request.method == 'POST':
            card = flashcards.create_custom_flashcard(current_user(), json_body())
            return success({'flashcard': card}, 201)
        return success({'flashcards': flashcards.get_custom_flashcards(current_user())})
    except Exception as e:
        return error_response(e, 'handling custom flashcards')


@app.route('/api/custom-flashcards/<int:card_id>', methods=['PUT', 'PATCH', 'DELETE'])
def api_custom_flashcard(card_id: int) -> Any:
    try:
        if request.method == 'DELETE':
            if not flashcards.delete_custom_flashcard(current_user(), card_id):
                return not_found('Custom flashcard not found')
            return success({'deleted': card_id})
        card = flashcards.update_custom_flashcard(current_user(), card_id, json_body())
        if card is None:
            return not_found('Custom flashcard not found')
        return success({'flashcard': card})
    except Exception as e:
        return error_response(e, 'updating custom flashcard')


@app.route('/api/flashcards/daily')
def api_daily_flashcards() -> Any:
    try:
        count = request.args.get('count', flashcards.DEFAULT_DAILY_COUNT, type=int)
        daily = flashcards.get_daily_flashcards(current_user(), count, arg_bool('common_words_only'))
        return success(daily)
    except Exception as e:
        return error_response(e, 'getting daily flashcards')


# ----------------------------------------------------------------------
# Review sessions
# ----------------------------------------------------------------------

@app.route('/api/review/availability', methods=['POST'])
def api_review_availability() -> Any:
    try:
        return success(review.check_session_availability(current_user(), json_body()))
    except Exception as e:
        return error_response(e, 'checking session availability')


@app.route('/api/review/sessions', methods=['POST'])
def api_generate_review_session() -> Any:
    try:
        data = json_body()
        session_type = data.pop('session_type', data.pop('sessionType', 'custom'))
        result = review.generate_review_session(current_user(), data, session_type)
        return success(result, 201)
    except Exception as e:
        return error_response(e, 'generating review session')


@app.route('/api/review/sessions/<int:session_id>')
def api_get_review_session(session_id: int) -> Any:
    try:
        result = review.get_review_session(current_user(), session_id)
        if result is None:
            return not_found('Review session not found')
        return success({'session': result})
    except Exception as e:
        return error_response(e, 'getting review session')


@app.route('/api/review/sessions/<int:session_id>/result', methods=['POST'])
def api_review_result(session_id: int) -> Any:
    try:
        data = json_body()
        flashcard_id = data.get('flashcard_id') or data.get('flashcardId')
        result = data.get('result')
        if not flashcard_id or not result:
            raise ValueError("flashcard_id and result are required")
        time_spent_ms = int(data.get('time_spent_ms', data.get('timeSpentMs', 0)) or 0)
        outcome = review.record_card_result(current_user(), session_id, str(flashcard_id), result, time_spent_ms)
        return success(outcome)
    except Exception as e:
        return error_response(e, 'recording card result')


@app.route('/api/review/sessions/<int:session_id>/complete', methods=['POST'])
def api_complete_review_session(session_id: int) -> Any:
    try:
        return success({'session': review.complete_review_session(current_user(), session_id)})
    except Exception as e:
        return error_response(e, 'completing review session')


@app.route('/api/review/sessions/<int:session_id>/abandon', methods=['POST'])
def api_abandon_review_session(session_id: int) -> Any:
    try:
        return success({'session': review.abandon_review_session(current_user(), session_id)})
    except Exception as e:
        return error_response(e, 'abandoning review session')


@app.route('/api/review/due')
def api_due_flashcards() -> Any:
    try:
        limit = request.args.get('limit', 50, type=int)
        cards = review.get_due_flashcards(current_user(), limit)
        if not cards:
            return jsonify({'status': 'no_cards', 'message': 'No cards due for review!', 'flashcards': []})
        return success({'flashcards': cards})
    except Exception as e:
        return error_response(e, 'getting due flashcards')


@app.route('/api/review/manual', methods=['POST'])
def api_manual_review() -> Any:
    """Grade a card 0-5 outside a session."""
    try:
        data = json_body()
        flashcard_id = data.get('flashcard_id')
        try:
            quality = int(data.get('quality'))
        except (TypeError, ValueError):
            raise ValueError("Please enter a valid number for quality")
        if not flashcard_id:
            raise ValueError("flashcard_id is required")
        if quality < 0 or quality > 5:
            raise ValueError("Quality must be between 0-5")
        result = review.review_flashcard_quality(current_user(), str(flashcard_id), quality)
        return success({'review': result, 'is_correct': quality >= 3})
    except Exception as e:
        return error_response(e, 'reviewing flashcard')


# ----------------------------------------------------------------------
# Statistics
# ----------------------------------------------------------------------

@app.route('/api/statistics/quick')
def api_quick_stats() -> Any:
    try:
        return success({'stats': statistics.get_quick_stats(current_user())})
    except Exception as e:
        return error_response(e, 'getting quick stats')


@app.route('/api/statistics/daily')
def api_daily_stats() -> Any:
    try:
        days_back = request.args.get('days_back', 30, type=int)
        return success({'days': statistics.get_daily_statistics(current_user(), days_back)})
    except Exception as e:
        return error_response(e, 'getting daily statistics')


@app.route('/api/statistics/streak')
def api_streak() -> Any:
    try:
        return success(statistics.get_streak(current_user()))
    except Exception as e:
        return error_response(e, 'getting streak')


@app.route('/api/statistics/practice', methods=['POST'])
def api_record_practice() -> Any:
    try:
        data = json_body()
        try:
            flashcards_count = int(data.get('flashcards_count', 0))
            correct_count = int(data.get('correct_count', 0))
            minutes = int(data.get('time_spent_minutes', 0))
        except (TypeError, ValueError):
            raise ValueError("counts must be integers")
        row = statistics.record_practice_session(current_user(), flashcards_count, correct_count,
                                                 minutes, data.get('topics'))
        return success({'day': row})
    except Exception as e:
        return error_response(e, 'recording practice session')


@app.route('/api/analytics')
def api_analytics() -> Any:
    """Return advanced analytics data as JSON."""
    try:
        return jsonify(statistics.get_analytics_data(current_user()))
    except Exception as e:
        if DEBUG:
            traceback.print_exc()
        return jsonify({"error": str(e)}), 500


# ----------------------------------------------------------------------
# Lessons and exercises
# ----------------------------------------------------------------------

@app.route('/api/topics/<int:topic_id>/lessons')
def api_topic_lessons(topic_id: int) -> Any:
    try:
        result = unlock.get_topic_lessons_with_status(current_user(), topic_id)
        if result is None:
            return not_found('Topic not found')
        return success(result)
    except Exception as e:
        return error_response(e, 'getting topic lessons')


@app.route('/api/practice-sets/<int:practice_set_id>/questions')
def api_practice_questions(practice_set_id: int) -> Any:
    try:
        return success({'questions': practice.get_practice_set_questions(practice_set_id)})
    except Exception as e:
        return error_response(e, 'getting practice questions')


@app.route('/api/practice-sets/<int:practice_set_id>/start', methods=['POST'])
def api_start_exercise(practice_set_id: int) -> Any:
    try:
        return success(practice.start_exercise(current_user(), practice_set_id))
    except Exception as e:
        return error_response(e, 'starting exercise')


@app.route('/api/practice-sets/<int:practice_set_id>/resume')
def api_resume_exercise(practice_set_id: int) -> Any:
    try:
        result = practice.resume_exercise(current_user(), practice_set_id)
        if result is None:
            return not_found('No exercise in progress')
        return success({'result': result})
    except Exception as e:
        return error_response(e, 'resuming exercise')


def _question_id(data: Dict[str, Any]) -> int:
    try:
        return int(data.get('questionId', data.get('question_id')))
    except (TypeError, ValueError):
        raise ValueError("questionId is required")


@app.route('/api/practice-results/<int:result_id>/answer', methods=['POST'])
def api_answer_question(result_id: int) -> Any:
    try:
        data = json_body()
        step = practice.answer_question(
            current_user(), result_id, _question_id(data), data.get('answer'),
            int(data.get('timeSpentMs', 0) or 0),
        )
        return success(step)
    except Exception as e:
        return error_response(e, 'answering question')


@app.route('/api/practice-results/<int:result_id>/skip', methods=['POST'])
def api_skip_question(result_id: int) -> Any:
    try:
        return success(practice.skip_question(current_user(), result_id, _question_id(json_body())))
    except Exception as e:
        return error_response(e, 'skipping question')


@app.route('/api/practice-results/<int:result_id>/submit', methods=['POST'])
def api_submit_exercise(result_id: int) -> Any:
    try:
        data = json_body()
        attempts = data.get('attempts')
        if attempts is not None and not isinstance(attempts, list):
            raise ValueError("attempts must be a list")
        result = practice.submit_exercise(
            current_user(), result_id, attempts,
            time_spent_seconds=int(data.get('timeSpentSeconds', 0) or 0),
        )
        return success(result)
    except Exception as e:
        return error_response(e, 'submitting exercise')


# ----------------------------------------------------------------------
# Settings
# ----------------------------------------------------------------------

@app.route('/api/settings', methods=['GET', 'POST'])
def api_settings() -> Any:
    try:
        if request.method == 'POST':
            data = json_body()
            settings = db.set_user_settings(current_user(), tier=data.get('tier'), timezone=data.get('timezone'))
            return success({'settings': settings})
        return success({'settings': db.get_user_settings(current_user())})
    except Exception as e:
        return error_response(e, 'handling settings')


# ----------------------------------------------------------------------
# Knowledge base
# ----------------------------------------------------------------------

@app.route('/api/rag/search', methods=['POST'])
def api_rag_search() -> Any:
    try:
        data = json_body()
        try:
            max_results = int(data.get('max_results', data.get('maxResults', 5)))
        except (TypeError, ValueError):
            raise ValueError("max_results must be an integer")
        result = rag.search_knowledge_base(
            data.get('query', ''),
            data.get('search_type', data.get('searchType', 'both')),
            max_results,
            study_ai_model or ai_model,
        )
        return success(result)
    except Exception as e:
        return error_response(e, 'searching knowledge base')


@app.route('/api/rag/grammar', methods=['POST'])
def api_add_grammar_chunk() -> Any:
    try:
        data = json_body()
        if not data.get('content'):
            raise ValueError("content is required")
        chunk_id = rag.add_grammar_chunk(
            data['content'],
            data.get('contextualized_chunk'),
            data.get('category_vi'),
            data.get('category_en'),
            data.get('metadata'),
        )
        return success({'id': chunk_id}, 201)
    except Exception as e:
        return error_response(e, 'adding grammar chunk')


@app.route('/api/rag/folklore', methods=['POST'])
def api_add_folklore_chunk() -> Any:
    try:
        data = json_body()
        vi_content = data.get('vi_content') or []
        if not data.get('type') or not vi_content:
            raise ValueError("type and vi_content are required")
        chunk_id = rag.add_folklore_chunk(
            data['type'],
            vi_content,
            data.get('en_content'),
            category_vi=data.get('category_vi'),
            category_en=data.get('category_en'),
            definition_vi=data.get('definition_vi'),
            definition_en=data.get('definition_en'),
        )
        return success({'id': chunk_id}, 201)
    except Exception as e:
        return error_response(e, 'adding folklore chunk')


# ----------------------------------------------------------------------
# Tutor chat
# ----------------------------------------------------------------------

@app.route('/api/chat/quota')
def api_chat_quota() -> Any:
    try:
        return success(chat.get_remaining_messages(current_user()))
    except Exception as e:
        return error_response(e, 'getting chat quota')


@app.route('/api/conversations', methods=['GET', 'POST'])
def api_conversations() -> Any:
    try:
        if request.method == 'POST':
            data = json_body()
            conversation = chat.create_conversation(
                current_user(),
                title=data.get('title'),
                topic=data.get('topic'),
                difficulty_level=data.get('difficulty_level'),
                conversation_type=data.get('conversation_type', 'chat'),
            )
            return success({'conversation': conversation}, 201)
        conversations = chat.list_conversations(
            current_user(),
            status=request.args.get('status'),
            limit=request.args.get('limit', type=int),
        )
        return success({'conversations': conversations})
    except Exception as e:
        return error_response(e, 'handling conversations')


@app.route('/api/conversations/<int:conversation_id>', methods=['GET', 'PATCH', 'DELETE'])
def api_conversation(conversation_id: int) -> Any:
    try:
        user = current_user()
        if request.method == 'DELETE':
            if not chat.delete_conversation(user, conversation_id):
                return not_found('Conversation not found')
            return success({'deleted': conversation_id})
        if request.method == 'PATCH':
            conversation = chat.update_conversation(user, conversation_id, **json_body())
        else:
            conversation = chat.get_conversation(user, conversation_id)
        if conversation is None:
            return not_found('Conversation not found')
        return success({'conversation': conversation})
    except Exception as e:
        return error_response(e, 'handling conversation')


@app.route('/api/conversations/<int:conversation_id>/messages', methods=['GET', 'POST'])
def api_conversation_messages(conversation_id: int) -> Any:
    """GET lists the transcript; POST sends a learner message and returns the tutor reply."""
    try:
        user = current_user()
        if request.method == 'POST':
            data = json_body()
            text = (data.get('message') or '').strip()
            if not text:
                raise ValueError("message is required")
            model = ai_model
            if model is None:
                raise ValueError("AI model is not configured. Please ensure OpenAI credentials are set.")
            result = chat.send_tutor_message(user, conversation_id, text, model,
                                             use_knowledge_base=data.get('use_knowledge_base', True))
            return success(result)
        messages = chat.get_messages(user, conversation_id)
        if messages is None:
            return not_found('Conversation not found')
        return success({'messages': messages})
    except Exception as e:
        return error_response(e, 'handling messages')


@app.route('/api/conversations/<int:conversation_id>/feedback', methods=['GET', 'POST'])
def api_conversation_feedback(conversation_id: int) -> Any:
    try:
        user = current_user()
        if request.method == 'POST':
            model = study_ai_model or ai_model
            if model is None:
                raise ValueError("AI model is not configured. Please ensure OpenAI credentials are set.")
            return success({'feedback': chat.generate_conversation_feedback(user, conversation_id, model)})
        feedback = chat.get_conversation_feedback(user, conversation_id)
        if feedback is None:
            return not_found('No feedback for this conversation')
        return success({'feedback': feedback})
    except Exception as e:
        return error_response(e, 'handling conversation feedback')


def get_local_ip() -> str:
    """Get the local IP address of the machine."""
    import socket
    try:
        # Connect to an external server (doesn't actually send data)
        # to determine the interface used for internet access
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect(("8.8.8.8", 80))
        local_ip = s.getsockname()[0]
        s.close()
        return local_ip
    except Exception:
        return "127.0.0.1"


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Vietnamese Learning App')
    parser.add_argument('--host', help='Host IP to bind to (default: auto-detect local IP)')
    parser.add_argument('--port', type=int, default=5000, help='Port to bind to (default: 5000)')
    parser.add_argument('--openai-key', help='OpenAI API Key')
    parser.add_argument('--openrouter-key', help='OpenRouter API Key (overrides OpenAI key)')
    parser.add_argument('--model', default='gpt-5.2', help='Main AI model name')
    parser.add_argument('--study-model', help='Model for search keywords and feedback (defaults to main model)')
    parser.add_argument('--embedding-model', help='Embedding model name (default: ' + db.EMBEDDING_MODEL + ')')
    parser.add_argument('--debug', action='store_true', help='Enable debug mode')

    args = parser.parse_args()

    if args.debug:
        DEBUG = True

    if args.openai_key or args.openrouter_key or args.model or args.study_model:
        api_key = args.openrouter_key or args.openai_key
        base_url = "https://openrouter.ai/api/v1" if args.openrouter_key else None

        init_ai(
            api_key=api_key,
            base_url=base_url,
            model_name=args.model,
            study_model_name=args.study_model,
            embedding_model_name=args.embedding_model,
        )

    try:
        if not db.is_db_initialized():
            db.init_db()
            print("✅ Database initialized")
    except Exception as e:
        print(f"❌ Database initialization failed: {str(e)}")

    host = args.host or get_local_ip()
    print(f"🚀 Starting server on http://{host}:{args.port}")
    app.run(debug=DEBUG, host=host, port=args.port)
