"""
api.py

HTTP surface of the counselling portal.

Run with:
    uvicorn portal.api:app --reload

Services (store, object storage, proposal cache, model clients) live on
`app.state` and are built on first use, so tests can hand in their own via
`create_app(...)`.
"""

import logging
import os
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, File, Form, Header, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field

from advisor.chat import GREETING, ChatSession
from advisor.context import ContextGenerator
from advisor.extraction import TranscriptProcessor
from portal.cache import ProposalCache
from portal.config import config
from portal.errors import (
    ExtractionError,
    NotFoundError,
    PortalError,
    RemoteStoreError,
    ReviewStateError,
    ValidationError,
)
from portal.files import ObjectStore, attach_file, attach_note_file, delete_file
from portal.postgres_storage import PostgresStore
from portal.review import ReviewState, TranscriptReview
from portal.roadmap import RoadmapService
from portal.storage import SQLiteStore
from portal.transcripts import capture_transcript, capture_transcript_file, list_transcripts

logger = logging.getLogger(__name__)

_lvl = getattr(logging, os.getenv("LOG_LEVEL", "INFO").strip().upper(), logging.INFO)
_portal_logger = logging.getLogger("portal")
_advisor_logger = logging.getLogger("advisor")
for _lg in (_portal_logger, _advisor_logger):
    _lg.setLevel(_lvl)
    if not _lg.handlers:
        _h = logging.StreamHandler()
        _h.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        _lg.addHandler(_h)
        _lg.propagate = False


# -----------------------------
# Request bodies
# -----------------------------

class StudentIn(BaseModel):
    name: str
    email: str
    grade: str
    curriculum: str
    target_year: int
    phone: Optional[str] = None
    other_curriculum: Optional[str] = None


class StudentPatch(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    grade: Optional[str] = None
    curriculum: Optional[str] = None
    other_curriculum: Optional[str] = None
    target_year: Optional[int] = None


class NoteIn(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    type: str = "text"
    phase_id: Optional[str] = None
    task_id: Optional[str] = None


class NotePatch(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    phase_id: Optional[str] = None
    task_id: Optional[str] = None


class TranscriptIn(BaseModel):
    title: str
    content: str


class SubtaskIn(BaseModel):
    task_id: str
    name: str
    owner: Optional[str] = None
    eta: Optional[str] = None
    remark: Optional[str] = None


class SubtaskPatch(BaseModel):
    name: Optional[str] = None
    status: Optional[str] = None
    remark: Optional[str] = None
    eta: Optional[str] = None
    owner: Optional[str] = None


class ChatIn(BaseModel):
    message: str
    mentions: List[Dict[str, Any]] = []


class ProcessTranscriptIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transcript_text: Optional[str] = Field(default=None, alias="transcriptText")
    phases: List[Dict[str, Any]] = []
    tasks: List[Dict[str, Any]] = []
    student_id: Optional[str] = Field(default=None, alias="studentId")


# -----------------------------
# App + services
# -----------------------------

def create_app(
    store=None,
    objects: Optional[ObjectStore] = None,
    cache: Optional[ProposalCache] = None,
    processor_factory: Optional[Callable[[Any], Any]] = None,
    context_generator: Optional[ContextGenerator] = None,
    chat_factory: Optional[Callable[[Any], ChatSession]] = None,
    completion_delay: Optional[float] = None,
) -> FastAPI:
    app = FastAPI(
        title="Counsellor Portal API",
        description="Students, roadmap, notes and AI-assisted transcript review for school counsellors.",
        version="0.1.0",
    )
    app.state.store = store
    app.state.objects = objects
    app.state.cache = cache
    app.state.processor_factory = processor_factory or (lambda s: TranscriptProcessor(store=s))
    app.state.context_generator = context_generator
    app.state.chat_factory = chat_factory or (lambda s: ChatSession(s))
    app.state.completion_delay = completion_delay
    app.state.reviews = {}  # (student_id, note_id) -> TranscriptReview
    app.state.chats = {}  # counsellor id -> ChatSession

    _register_errors(app)
    _register_routes(app)

    storage_root = objects.root if objects is not None else config["storage_dir"]
    app.mount("/storage", StaticFiles(directory=str(storage_root), check_dir=False), name="storage")
    return app


def _store(request: Request):
    state = request.app.state
    if state.store is None:
        state.store = PostgresStore() if config["database_url"] else SQLiteStore()
    return state.store


def _objects(request: Request) -> ObjectStore:
    state = request.app.state
    if state.objects is None:
        state.objects = ObjectStore()
    return state.objects


def _cache(request: Request) -> ProposalCache:
    state = request.app.state
    if state.cache is None:
        state.cache = ProposalCache()
    return state.cache


def _context_generator(request: Request) -> ContextGenerator:
    state = request.app.state
    if state.context_generator is None:
        try:
            state.context_generator = ContextGenerator(_store(request))
        except ValueError as exc:
            raise ExtractionError(str(exc)) from exc
    return state.context_generator


def _processor(request: Request):
    try:
        return request.app.state.processor_factory(_store(request))
    except ValueError as exc:
        raise ExtractionError(str(exc)) from exc


def _roadmap(request: Request) -> RoadmapService:
    # Context refresh on completion only when a generator is already configured.
    return RoadmapService(_store(request), context_generator=request.app.state.context_generator)


def _found(row: Optional[Dict[str, Any]], what: str) -> Dict[str, Any]:
    if row is None:
        raise NotFoundError(f"{what} not found")
    return row


def _counsellor(request: Request, counsellor_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not counsellor_id:
        return None
    return _store(request).get_counsellor(counsellor_id)


def _register_errors(app: FastAPI) -> None:
    status_for = [
        (ValidationError, 400),
        (NotFoundError, 404),
        (ReviewStateError, 409),
        (RemoteStoreError, 502),
        (ExtractionError, 502),
        (PortalError, 500),
    ]

    @app.exception_handler(PortalError)
    async def _portal_error(request: Request, exc: PortalError):
        status = next(code for cls, code in status_for if isinstance(exc, cls))
        if status >= 500:
            logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status, content={"error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def _bad_request(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        return JSONResponse(status_code=400, content={"error": f"{where}: {first.get('msg', 'invalid request')}"})


def _register_routes(app: FastAPI) -> None:

    # -----------------------------
    # Students
    # -----------------------------

    @app.get("/students")
    def list_students(request: Request, x_counsellor_id: Optional[str] = Header(default=None)):
        return _store(request).list_students(x_counsellor_id)

    @app.get("/students/search")
    def search_students(request: Request, q: str = Query(..., min_length=1), limit: int = 5):
        return _store(request).search_students(q, limit=limit)

    @app.post("/students", status_code=201)
    def create_student(body: StudentIn, request: Request, x_counsellor_id: Optional[str] = Header(default=None)):
        return _store(request).create_student(counsellor_id=x_counsellor_id, **body.model_dump())

    @app.get("/students/{student_id}")
    def get_student(student_id: str, request: Request):
        return _found(_store(request).get_student(student_id), "Student")

    @app.patch("/students/{student_id}")
    def update_student(student_id: str, body: StudentPatch, request: Request):
        fields = body.model_dump(exclude_none=True)
        if not fields:
            raise ValidationError("Nothing to update")
        return _found(_store(request).update_student(student_id, **fields), "Student")

    @app.delete("/students/{student_id}")
    def delete_student(student_id: str, request: Request):
        store = _store(request)
        _found(store.get_student(student_id), "Student")
        urls = store.delete_student(student_id)
        removed = _objects(request).remove_urls(urls)
        logger.info("[API] deleted student %s and %d stored objects", student_id, removed)
        return {"deleted": student_id, "objectsRemoved": removed}

    @app.post("/students/{student_id}/context")
    def generate_context(student_id: str, request: Request):
        _found(_store(request).get_student(student_id), "Student")
        return {"studentContext": _context_generator(request).generate(student_id)}

    # -----------------------------
    # Roadmap, subtasks, deadlines
    # -----------------------------

    @app.get("/roadmap")
    def get_roadmap(request: Request):
        return _store(request).get_roadmap()

    @app.get("/students/{student_id}/roadmap")
    def student_roadmap(student_id: str, request: Request):
        _found(_store(request).get_student(student_id), "Student")
        return _roadmap(request).student_roadmap(student_id)

    @app.get("/students/{student_id}/subtasks")
    def list_subtasks(student_id: str, request: Request):
        return _store(request).list_subtasks(student_id, with_roadmap=True)

    @app.post("/students/{student_id}/subtasks", status_code=201)
    def create_subtask(student_id: str, body: SubtaskIn, request: Request):
        _found(_store(request).get_student(student_id), "Student")
        return _roadmap(request).create_subtask(student_id, **body.model_dump())

    @app.patch("/subtasks/{subtask_id}")
    def update_subtask(subtask_id: str, body: SubtaskPatch, request: Request):
        _found(_store(request).get_subtask(subtask_id), "Subtask")
        return _roadmap(request).update_subtask(subtask_id, **body.model_dump(exclude_unset=True))

    @app.delete("/subtasks/{subtask_id}")
    def delete_subtask(subtask_id: str, request: Request):
        store = _store(request)
        _found(store.get_subtask(subtask_id), "Subtask")
        store.delete_subtask(subtask_id)
        return {"deleted": subtask_id}

    @app.get("/students/{student_id}/deadlines")
    def deadlines(student_id: str, request: Request, status: Optional[str] = None,
                  owner: Optional[str] = None, search: Optional[str] = None):
        return _roadmap(request).deadlines(student_id, status=status, owner=owner, search=search)

    @app.get("/students/{student_id}/calendar")
    def calendar(student_id: str, request: Request, year: int, month: int):
        return _roadmap(request).calendar(student_id, year, month)

    # -----------------------------
    # Notes + files
    # -----------------------------

    @app.get("/students/{student_id}/notes")
    def list_notes(student_id: str, request: Request, type: Optional[str] = None):
        return _store(request).list_notes(student_id, type=type)

    @app.post("/students/{student_id}/notes", status_code=201)
    def create_note(student_id: str, body: NoteIn, request: Request,
                    x_counsellor_id: Optional[str] = Header(default=None)):
        store = _store(request)
        _found(store.get_student(student_id), "Student")
        return store.create_note(student_id=student_id, updated_by=x_counsellor_id, **body.model_dump())

    @app.post("/students/{student_id}/notes/upload", status_code=201)
    async def upload_note(student_id: str, request: Request, file: UploadFile = File(...),
                          title: Optional[str] = Form(default=None),
                          x_counsellor_id: Optional[str] = Header(default=None)):
        store = _store(request)
        _found(store.get_student(student_id), "Student")
        data = await file.read()
        return attach_note_file(store, _objects(request), student_id, file.filename or "upload", data,
                                title=title, counsellor_id=x_counsellor_id)

    @app.patch("/notes/{note_id}")
    def update_note(note_id: str, body: NotePatch, request: Request,
                    x_counsellor_id: Optional[str] = Header(default=None)):
        fields = body.model_dump(exclude_unset=True)
        if not fields:
            raise ValidationError("Nothing to update")
        return _found(_store(request).update_note(note_id, updated_by=x_counsellor_id, **fields), "Note")

    @app.delete("/notes/{note_id}")
    def delete_note(note_id: str, request: Request):
        store = _store(request)
        note = _found(store.get_note(note_id), "Note")
        if note.get("file_url"):
            _objects(request).remove_urls([note["file_url"]])
        store.delete_note(note_id)
        return {"deleted": note_id}

    @app.get("/students/{student_id}/files")
    def list_files(student_id: str, request: Request):
        return _store(request).list_files(student_id)

    @app.post("/students/{student_id}/files", status_code=201)
    async def upload_file(student_id: str, request: Request, file: UploadFile = File(...),
                          description: Optional[str] = Form(default=None),
                          phase_id: Optional[str] = Form(default=None),
                          task_id: Optional[str] = Form(default=None),
                          x_counsellor_id: Optional[str] = Header(default=None)):
        store = _store(request)
        _found(store.get_student(student_id), "Student")
        data = await file.read()
        return attach_file(store, _objects(request), student_id, file.filename or "upload", data,
                           description=description, phase_id=phase_id, task_id=task_id,
                           counsellor_id=x_counsellor_id)

    @app.delete("/files/{file_id}")
    def remove_file(file_id: str, request: Request):
        store = _store(request)
        _found(store.get_file(file_id), "File")
        delete_file(store, _objects(request), file_id)
        return {"deleted": file_id}

    # -----------------------------
    # Transcripts + review
    # -----------------------------

    @app.get("/students/{student_id}/transcripts")
    def get_transcripts(student_id: str, request: Request):
        return list_transcripts(_store(request), student_id)

    @app.post("/students/{student_id}/transcripts", status_code=201)
    def create_transcript(student_id: str, body: TranscriptIn, request: Request,
                          x_counsellor_id: Optional[str] = Header(default=None)):
        store = _store(request)
        _found(store.get_student(student_id), "Student")
        return capture_transcript(store, student_id, body.title, body.content, x_counsellor_id)

    @app.post("/students/{student_id}/transcripts/upload", status_code=201)
    async def upload_transcript(student_id: str, request: Request, file: UploadFile = File(...),
                                title: Optional[str] = Form(default=None),
                                x_counsellor_id: Optional[str] = Header(default=None)):
        store = _store(request)
        _found(store.get_student(student_id), "Student")
        data = await file.read()
        return capture_transcript_file(store, student_id, file.filename or "transcript.txt", data,
                                       title=title, counsellor_id=x_counsellor_id)

    def _review(request: Request, student_id: str, note_id: str) -> TranscriptReview:
        review = request.app.state.reviews.get((student_id, note_id))
        if review is None:
            raise NotFoundError("No review open for this transcript")
        return review

    @app.post("/students/{student_id}/transcripts/{note_id}/review")
    def open_review(student_id: str, note_id: str, request: Request,
                    x_counsellor_id: Optional[str] = Header(default=None)):
        reviews = request.app.state.reviews
        key = (student_id, note_id)
        review = reviews.get(key)
        if review is not None and review.state not in (ReviewState.SUCCESS, ReviewState.CANCELLED):
            return review.open().snapshot()

        store = _store(request)
        note = _found(store.get_note(note_id), "Transcript")
        if note["student_id"] != student_id:
            raise NotFoundError("Transcript not found")

        cache = _cache(request)

        def _finished(result):
            if reviews.get(key) is review:
                reviews.pop(key, None)

        review = TranscriptReview(
            store,
            None,
            student_id,
            note_id,
            counsellor=_counsellor(request, x_counsellor_id),
            cache=cache,
            on_complete=_finished,
            completion_delay=request.app.state.completion_delay,
            # Only built when the cache cannot be restored.
            processor_factory=lambda: _processor(request),
        )
        reviews[key] = review
        return review.open().snapshot()

    @app.get("/students/{student_id}/transcripts/{note_id}/review")
    def get_review(student_id: str, note_id: str, request: Request):
        return _review(request, student_id, note_id).snapshot()

    @app.post("/students/{student_id}/transcripts/{note_id}/review/proposals", status_code=201)
    def add_proposal(student_id: str, note_id: str, request: Request):
        review = _review(request, student_id, note_id)
        review.add()
        return review.snapshot()

    @app.put("/students/{student_id}/transcripts/{note_id}/review/proposals/{proposal_id}")
    def save_proposal(student_id: str, note_id: str, proposal_id: str, patch: Dict[str, Any], request: Request):
        review = _review(request, student_id, note_id)
        _proposal_call(review.save, proposal_id, patch)
        return review.snapshot()

    @app.post("/students/{student_id}/transcripts/{note_id}/review/proposals/{proposal_id}/edit")
    def edit_proposal(student_id: str, note_id: str, proposal_id: str, request: Request):
        review = _review(request, student_id, note_id)
        _proposal_call(review.edit, proposal_id)
        return review.snapshot()

    @app.post("/students/{student_id}/transcripts/{note_id}/review/proposals/{proposal_id}/cancel-edit")
    def cancel_edit_proposal(student_id: str, note_id: str, proposal_id: str, request: Request):
        review = _review(request, student_id, note_id)
        if review.proposals is not None and review.proposals.editing_id == proposal_id:
            review.cancel_edit()
        return review.snapshot()

    @app.post("/students/{student_id}/transcripts/{note_id}/review/dismiss")
    def dismiss_review_error(student_id: str, note_id: str, request: Request):
        review = _review(request, student_id, note_id)
        review.dismiss_error()
        return review.snapshot()

    @app.post("/students/{student_id}/transcripts/{note_id}/review/resume")
    def resume_review(student_id: str, note_id: str, request: Request):
        review = _review(request, student_id, note_id)
        review.resume()
        return review.snapshot()

    @app.delete("/students/{student_id}/transcripts/{note_id}/review/proposals/{proposal_id}")
    def delete_proposal(student_id: str, note_id: str, proposal_id: str, request: Request):
        review = _review(request, student_id, note_id)
        _proposal_call(review.soft_delete, proposal_id)
        return review.snapshot()

    @app.post("/students/{student_id}/transcripts/{note_id}/review/proposals/{proposal_id}/restore")
    def restore_proposal(student_id: str, note_id: str, proposal_id: str, request: Request):
        review = _review(request, student_id, note_id)
        _proposal_call(review.restore, proposal_id)
        return review.snapshot()

    @app.post("/students/{student_id}/transcripts/{note_id}/review/commit")
    def commit_review(student_id: str, note_id: str, request: Request):
        review = _review(request, student_id, note_id)
        result = review.commit()
        if result is None:
            return JSONResponse(status_code=502, content=review.snapshot())
        return review.snapshot()

    @app.post("/students/{student_id}/transcripts/{note_id}/review/cancel")
    def cancel_review(student_id: str, note_id: str, request: Request):
        reviews = request.app.state.reviews
        review = reviews.pop((student_id, note_id), None)
        if review is None:
            # Nothing in memory; still drop any cached working set.
            _cache(request).clear(student_id, note_id)
            return {"state": ReviewState.CANCELLED.value}
        review.cancel()
        return review.snapshot()

    # -----------------------------
    # AI
    # -----------------------------

    def _chat_session(request: Request, counsellor_id: Optional[str]) -> ChatSession:
        sessions = request.app.state.chats
        session_key = counsellor_id or "anonymous"
        session = sessions.get(session_key)
        if session is None:
            try:
                session = request.app.state.chat_factory(_store(request))
            except ValueError as exc:
                raise ExtractionError(str(exc)) from exc
            sessions[session_key] = session
        return session

    @app.get("/chat/mentions")
    def chat_mentions(request: Request, q: str = Query(default=""), limit: int = Query(default=5, ge=1, le=20),
                      x_counsellor_id: Optional[str] = Header(default=None)):
        """Students matching the text typed after '@'."""
        if not q.strip():
            return []
        return _chat_session(request, x_counsellor_id).suggest(q.strip(), limit=limit)

    @app.post("/chat")
    def chat(body: ChatIn, request: Request, x_counsellor_id: Optional[str] = Header(default=None)):
        session = _chat_session(request, x_counsellor_id)
        for student in body.mentions:
            if student.get("id") and student.get("name"):
                session.remember_mention(student)
        return session.ask(body.message)

    @app.get("/chat/greeting")
    def chat_greeting():
        return {"reply": GREETING}

    @app.post("/functions/process-transcript")
    def process_transcript(body: ProcessTranscriptIn, request: Request):
        if not body.transcript_text:
            return JSONResponse(status_code=400, content={"error": "Transcript text is required"})
        try:
            proposals = _processor(request).process(body.transcript_text, body.phases, body.tasks,
                                          student_id=body.student_id)
        except Exception as exc:
            logger.error("[API] process-transcript failed: %s", exc)
            return JSONResponse(status_code=500, content={"error": str(exc) or "Failed to process transcript"})
        return {
            "extractedTasks": [p.to_json_dict() for p in proposals],
            "phaseOptions": body.phases,
            "taskOptions": body.tasks,
        }


def _proposal_call(fn: Callable[..., Any], proposal_id: str, *args: Any) -> Any:
    try:
        return fn(proposal_id, *args)
    except KeyError:
        raise NotFoundError(f"Proposal not found: {proposal_id}")


app = create_app()


if __name__ == "__main__":
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    logger.info("[API] serving on http://%s:%d", host, port)
    uvicorn.run("portal.api:app", host=host, port=port, reload=os.getenv("RELOAD", "false").lower() == "true")
