# -*- coding: utf-8 -*-
"""
HTTP 接口层 - FastAPI

本模块提供基于 FastAPI 的 RESTful API 接口，支持：
1. 创建任务（JSON 文本或 .txt 文件上传）
2. 分阶段执行：故事圣经 → 分集架构 → 剧本 → 分镜 → 资产
3. 后台执行完整流水线
4. 任务状态查询、结果获取与删除
5. 单集剧本 / 分镜重新生成、片段修改、分镜导出（JSON / CSV）、单个资产生成

核心设计：
- 内存 JobStore 保存任务状态，线程锁保护
- 阶段前置条件未满足返回 400，任务不存在返回 404
- LLM 客户端通过依赖注入提供，测试时可替换
"""
import logging
import threading
import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, Form, HTTPException, UploadFile, BackgroundTasks, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from config import load_config
from errors import ClipNotFoundError, EpisodeNotFoundError, StageNotReadyError
from llm_client import LLMClient, create_llm_client
from main import NovelProcessor
from models import Architecture, StoryBible
from script_generator import find_episode_script, update_clip
from storyboard_generator import StoryboardGenerator
from presets import RHYTHM_TEMPLATES, STYLE_PRESETS, get_style_preset, list_style_presets

logger = logging.getLogger(__name__)


# ==================== 数据模型 ====================

class JobStatus(str, Enum):
    """任务状态枚举"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


STAGES = ("storyBible", "architecture", "script", "storyboard", "assets")

# 阶段结果重新生成时需要作废的下游阶段
STAGE_DEPENDENTS = {
    "storyBible": ("architecture", "script", "storyboard", "assets"),
    "architecture": ("script", "storyboard"),
    "script": ("storyboard",),
}


class CreateJobRequest(BaseModel):
    """创建任务请求"""
    title: str = Field(default="未命名", description="小说标题")
    content: str = Field(..., min_length=1, description="小说正文")


class JobCreatedResponse(BaseModel):
    """创建任务响应"""
    job_id: str = Field(..., description="任务唯一标识符")
    status: JobStatus = Field(..., description="初始任务状态")
    message: str = Field(..., description="响应消息")


class JobStatusInfo(BaseModel):
    """任务状态"""
    job_id: str
    title: str
    status: JobStatus
    progress: int = Field(default=0, description="处理进度百分比 (0-100)")
    message: Optional[str] = None
    stages: Dict[str, bool] = Field(default_factory=dict, description="各阶段是否已完成")
    created_at: datetime
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None


class ArchitectureRequest(BaseModel):
    target_episodes: Optional[int] = Field(default=None, ge=1, description="目标集数，默认自动计算")
    rhythm: Optional[str] = Field(default=None, description="节奏模板 id")
    use_llm: bool = True


class EpisodeAdjustRequest(BaseModel):
    title: Optional[str] = None
    logline: Optional[str] = None
    beat_map: Optional[Dict[str, Any]] = Field(default=None, description="位置 → {type, description}")
    instruction: Optional[str] = Field(default=None, description="交给 LLM 的调整说明")
    use_llm: bool = False


class StoryboardRequest(BaseModel):
    style: Optional[str] = None
    max_duration: Optional[float] = Field(default=None, gt=0, description="单片段最大时长（秒）")
    use_llm: bool = True
    per_clip: bool = False


class AssetsRequest(BaseModel):
    style: Optional[str] = None
    use_llm: bool = True


class ClipUpdateRequest(BaseModel):
    """片段修改，未提供的字段保持不变"""
    narration: Optional[str] = None
    visual: Optional[str] = None
    emotion: Optional[str] = None
    dialogue: Optional[List[Dict[str, str]]] = Field(default=None, description="[{speaker, line}]")


class SceneAssetRequest(BaseModel):
    name: str = Field(..., min_length=1, description="场景名称")
    description: str = ""
    atmosphere: Optional[str] = None
    style: Optional[str] = None
    use_llm: bool = True


class PropAssetRequest(BaseModel):
    name: str = Field(..., min_length=1, description="道具名称")
    description: str = ""
    style: Optional[str] = None


class PipelineRequest(BaseModel):
    target_episodes: Optional[int] = Field(default=None, ge=1)
    style: Optional[str] = None
    max_duration: Optional[float] = Field(default=None, gt=0)
    llm_storyboard: bool = True
    per_clip: bool = False
    skip_assets: bool = False


class ErrorResponse(BaseModel):
    """错误响应模型"""
    detail: str = Field(..., description="错误详情")


# ==================== 任务存储 ====================

class JobStore:
    """
    内存任务存储

    使用线程锁保证线程安全，单进程使用。
    """

    def __init__(self):
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def create_job(self, job_id: str, title: str, content: str) -> Dict[str, Any]:
        """创建新任务"""
        now = datetime.now()
        job = {
            "job_id": job_id,
            "title": title,
            "content": content,
            "status": JobStatus.PENDING,
            "progress": 0,
            "message": "任务已创建，等待处理",
            "created_at": now,
            "updated_at": now,
            "completed_at": None,
            "error_message": None,
        }
        for stage in STAGES:
            job[stage] = None
        with self._lock:
            self._jobs[job_id] = job
        return job

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._jobs.get(job_id)

    def update_job(self, job_id: str, status: Optional[JobStatus] = None, progress: Optional[int] = None,
                   message: Optional[str] = None, error_message: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """更新任务状态（线程安全）"""
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return None
            if status is not None:
                job["status"] = status
            if progress is not None:
                job["progress"] = progress
            if message is not None:
                job["message"] = message
            if error_message is not None:
                job["error_message"] = error_message
            job["updated_at"] = datetime.now()
            if status == JobStatus.COMPLETED:
                job["completed_at"] = job["updated_at"]
            return job

    def set_stage(self, job_id: str, stage: str, value: Any) -> bool:
        """保存某个阶段的结果，并清空依赖它的后续阶段"""
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return False
            job[stage] = value
            for later in STAGE_DEPENDENTS.get(stage, ()):
                job[later] = None
            job["updated_at"] = datetime.now()
            return True

    def delete_job(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


# 全局任务存储实例
job_store = JobStore()


# ==================== FastAPI 应用 ====================

app = FastAPI(
    title="Novel to Drama Storyboard API",
    description="小说转漫剧流水线 - 故事圣经、分集架构、剧本、分镜与资产提示词",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StageNotReadyError)
async def stage_not_ready_handler(request: Request, exc: StageNotReadyError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(EpisodeNotFoundError)
async def episode_not_found_handler(request: Request, exc: EpisodeNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ClipNotFoundError)
async def clip_not_found_handler(request: Request, exc: ClipNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


# ==================== 依赖与工具函数 ====================

def get_llm_client() -> LLMClient:
    """按环境配置创建 LLM 客户端（测试中可通过 dependency_overrides 替换）"""
    return create_llm_client(load_config())


def get_processor(llm_client: LLMClient = Depends(get_llm_client)) -> NovelProcessor:
    return NovelProcessor(llm_client=llm_client, config=load_config(dotenv=False))


def _get_job_or_404(job_id: str) -> Dict[str, Any]:
    job = job_store.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail=f"任务不存在：{job_id}")
    return job


def _require(job: Dict[str, Any], stage: str, *prerequisites: str) -> None:
    for prerequisite in prerequisites:
        if job.get(prerequisite) is None:
            raise StageNotReadyError(stage, prerequisite)


def _status_info(job: Dict[str, Any]) -> JobStatusInfo:
    return JobStatusInfo(
        job_id=job["job_id"],
        title=job["title"],
        status=job["status"],
        progress=job["progress"],
        message=job["message"],
        stages={stage: job.get(stage) is not None for stage in STAGES},
        created_at=job["created_at"],
        updated_at=job["updated_at"],
        completed_at=job["completed_at"],
        error_message=job.get("error_message")
    )


def _create(title: str, content: str) -> JobCreatedResponse:
    job_id = uuid.uuid4().hex
    job_store.create_job(job_id, title, content)
    logger.info("[API] 创建任务 %s: %s (%d 字)", job_id, title, len(content))
    return JobCreatedResponse(job_id=job_id, status=JobStatus.PENDING, message="任务已创建")


def _decode_upload(raw: bytes) -> str:
    for encoding in ("utf-8", "gbk", "gb18030", "big5"):
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            continue
    return raw.decode("utf-8", errors="ignore")


def run_pipeline_job(job_id: str, processor: NovelProcessor, request: PipelineRequest) -> None:
    """
    后台执行完整流水线

    每个阶段完成后立即写回任务存储，失败时记录错误信息。
    """
    job = job_store.get_job(job_id)
    if not job:
        return
    try:
        job_store.update_job(job_id, status=JobStatus.PROCESSING, progress=10, message="正在提取故事圣经...")
        bible = processor.build_story_bible(job["content"], job["title"])
        job_store.set_stage(job_id, "storyBible", bible.to_dict())

        job_store.update_job(job_id, progress=30, message="正在生成分集架构...")
        architecture = processor.build_architecture(bible, request.target_episodes)
        job_store.set_stage(job_id, "architecture", architecture.to_dict())

        job_store.update_job(job_id, progress=50, message="正在生成剧本...")
        script = processor.build_script(bible, architecture)
        job_store.set_stage(job_id, "script", script)

        job_store.update_job(job_id, progress=70, message="正在生成分镜...")
        storyboard = processor.build_storyboard(script, request.style, request.max_duration,
                                                use_llm=request.llm_storyboard, use_batch=not request.per_clip)
        job_store.set_stage(job_id, "storyboard", storyboard)

        if not request.skip_assets:
            job_store.update_job(job_id, progress=90, message="正在生成资产...")
            job_store.set_stage(job_id, "assets", processor.build_assets(bible, request.style))

        job_store.update_job(job_id, status=JobStatus.COMPLETED, progress=100, message="处理完成！")
    except Exception as e:
        logger.exception("[ERROR] Job %s failed", job_id)
        job_store.update_job(job_id, status=JobStatus.FAILED, error_message=str(e),
                             message=f"处理失败：{e}")


# ==================== API 端点 ====================

@app.get("/", response_model=Dict[str, str])
async def root():
    """API 根路径"""
    return {
        "service": "Novel to Drama Storyboard API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs"
    }


@app.get("/api/v1/health")
async def health_check():
    """健康检查端点"""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "active_jobs": len(job_store)
    }


@app.get("/api/v1/styles")
async def list_styles():
    """可用视觉风格与节奏模板"""
    return {
        "styles": list_style_presets(),
        "rhythms": [{"id": r.id, "name": r.name, "duration": r.duration} for r in RHYTHM_TEMPLATES.values()]
    }


@app.get("/api/v1/styles/{style_id}")
async def get_style(style_id: str):
    if style_id.lower() not in STYLE_PRESETS:
        raise HTTPException(status_code=404, detail=f"风格不存在：{style_id}")
    return get_style_preset(style_id).to_dict()


@app.post("/api/v1/jobs", response_model=JobCreatedResponse)
async def create_job(request: CreateJobRequest):
    """以 JSON 正文创建任务"""
    if not request.content.strip():
        raise HTTPException(status_code=400, detail="小说正文不能为空")
    return _create(request.title, request.content)


@app.post(
    "/api/v1/jobs/upload",
    response_model=JobCreatedResponse,
    responses={400: {"model": ErrorResponse, "description": "文件格式错误"}}
)
async def upload_job(file: UploadFile = File(..., description="小说文件（.txt 格式）"),
                     title: Optional[str] = Form(default=None)):
    """上传 .txt 文件创建任务"""
    filename = file.filename or ""
    if not filename.lower().endswith(".txt"):
        raise HTTPException(status_code=400, detail=f"不支持的文件格式：{filename}，请上传 .txt 格式的文件")

    content = _decode_upload(await file.read())
    if not content.strip():
        raise HTTPException(status_code=400, detail="上传的文件为空")
    return _create(title or filename[:-4] or "未命名", content)


@app.get("/api/v1/jobs/{job_id}", responses={404: {"model": ErrorResponse}})
async def get_job(job_id: str):
    """任务完整状态（各阶段结果）"""
    job = _get_job_or_404(job_id)
    data = jsonable_encoder(_status_info(job))
    data["novelLength"] = len(job["content"])
    for stage in STAGES:
        data[stage] = job.get(stage)
    return data


@app.get("/api/v1/jobs/{job_id}/status", response_model=JobStatusInfo, responses={404: {"model": ErrorResponse}})
async def get_job_status(job_id: str):
    return _status_info(_get_job_or_404(job_id))


@app.delete("/api/v1/jobs/{job_id}", response_model=Dict[str, str], responses={404: {"model": ErrorResponse}})
async def delete_job(job_id: str):
    _get_job_or_404(job_id)
    job_store.delete_job(job_id)
    return {"message": f"任务 {job_id} 已删除"}


@app.post("/api/v1/jobs/{job_id}/run", response_model=JobStatusInfo)
def run_job(job_id: str, background_tasks: BackgroundTasks, request: Optional[PipelineRequest] = None,
            processor: NovelProcessor = Depends(get_processor)):
    """后台执行完整流水线，立即返回当前状态"""
    job = _get_job_or_404(job_id)
    if job["status"] == JobStatus.PROCESSING:
        raise HTTPException(status_code=409, detail="任务正在处理中")
    background_tasks.add_task(run_pipeline_job, job_id, processor, request or PipelineRequest())
    return _status_info(job)


# ==================== 分阶段端点 ====================

@app.post("/api/v1/jobs/{job_id}/story-bible")
def build_story_bible(job_id: str, processor: NovelProcessor = Depends(get_processor)):
    job = _get_job_or_404(job_id)
    bible = processor.build_story_bible(job["content"], job["title"])
    job_store.set_stage(job_id, "storyBible", bible.to_dict())
    return bible.to_dict()


@app.post("/api/v1/jobs/{job_id}/architecture")
def build_architecture(job_id: str, request: Optional[ArchitectureRequest] = None,
                       processor: NovelProcessor = Depends(get_processor)):
    request = request or ArchitectureRequest()
    job = _get_job_or_404(job_id)
    _require(job, "architecture", "storyBible")
    bible = StoryBible.from_dict(job["storyBible"])
    architecture = processor.build_architecture(bible, request.target_episodes, request.rhythm,
                                                use_llm=request.use_llm)
    job_store.set_stage(job_id, "architecture", architecture.to_dict())
    return architecture.to_dict()


@app.put("/api/v1/jobs/{job_id}/architecture/episodes/{number}")
def adjust_episode(job_id: str, number: int, request: EpisodeAdjustRequest,
                   processor: NovelProcessor = Depends(get_processor)):
    """调整单集标题、卖点、爽点地图；事件分配不变"""
    job = _get_job_or_404(job_id)
    _require(job, "adjust_episode", "storyBible", "architecture")
    architecture = Architecture.from_dict(job["architecture"])
    adjustments: Dict[str, Any] = {}
    if request.title:
        adjustments["title"] = request.title
    if request.logline:
        adjustments["logline"] = request.logline
    if request.beat_map:
        adjustments["beatMap"] = request.beat_map
    if request.instruction:
        adjustments["instruction"] = request.instruction

    processor.architect.adjust_episode(architecture, number, adjustments,
                                       StoryBible.from_dict(job["storyBible"]), use_llm=request.use_llm)
    job_store.set_stage(job_id, "architecture", architecture.to_dict())
    return architecture.find_episode(number).to_dict()


@app.post("/api/v1/jobs/{job_id}/script")
def build_script(job_id: str, processor: NovelProcessor = Depends(get_processor)):
    job = _get_job_or_404(job_id)
    _require(job, "script", "storyBible", "architecture")
    script = processor.build_script(StoryBible.from_dict(job["storyBible"]),
                                    Architecture.from_dict(job["architecture"]))
    job_store.set_stage(job_id, "script", script)
    return script


@app.get("/api/v1/jobs/{job_id}/script/episodes/{number}")
async def get_episode_script(job_id: str, number: int):
    job = _get_job_or_404(job_id)
    _require(job, "get_episode_script", "script")
    return find_episode_script(job["script"], number)


@app.post("/api/v1/jobs/{job_id}/script/episodes/{number}")
def rebuild_episode_script(job_id: str, number: int, processor: NovelProcessor = Depends(get_processor)):
    """重新生成单集剧本；剧本变化后分镜作废"""
    job = _get_job_or_404(job_id)
    _require(job, "rebuild_episode_script", "storyBible", "architecture", "script")
    script = processor.rebuild_script_episode(job["script"], StoryBible.from_dict(job["storyBible"]),
                                              Architecture.from_dict(job["architecture"]), number)
    job_store.set_stage(job_id, "script", script)
    return find_episode_script(script, number)


@app.put("/api/v1/jobs/{job_id}/script/episodes/{number}/clips/{clip_id}")
def update_script_clip(job_id: str, number: int, clip_id: str, request: ClipUpdateRequest):
    """修改单个片段的旁白 / 画面 / 情绪 / 对白"""
    job = _get_job_or_404(job_id)
    _require(job, "update_script_clip", "script")
    clip = update_clip(job["script"], number, clip_id, {
        "narration": request.narration,
        "visual": request.visual,
        "emotion": request.emotion,
        "dialogue": request.dialogue,
    })
    job_store.set_stage(job_id, "script", job["script"])
    return clip


@app.post("/api/v1/jobs/{job_id}/storyboard")
def build_storyboard(job_id: str, request: Optional[StoryboardRequest] = None,
                     processor: NovelProcessor = Depends(get_processor)):
    request = request or StoryboardRequest()
    job = _get_job_or_404(job_id)
    _require(job, "storyboard", "script")
    storyboard = processor.build_storyboard(job["script"], request.style, request.max_duration,
                                            use_llm=request.use_llm, use_batch=not request.per_clip)
    job_store.set_stage(job_id, "storyboard", storyboard)
    return storyboard


@app.post("/api/v1/jobs/{job_id}/storyboard/episodes/{number}")
def rebuild_episode_storyboard(job_id: str, number: int, request: Optional[StoryboardRequest] = None,
                               processor: NovelProcessor = Depends(get_processor)):
    """重新生成单集分镜，结果替换到已有分镜中"""
    request = request or StoryboardRequest()
    job = _get_job_or_404(job_id)
    _require(job, "rebuild_episode_storyboard", "script")
    episode_script = find_episode_script(job["script"], number)
    storyboard = processor.rebuild_storyboard_episode(
        job["storyboard"], episode_script, request.style, request.max_duration,
        use_llm=request.use_llm, use_batch=not request.per_clip
    )
    job_store.set_stage(job_id, "storyboard", storyboard)
    return next(e for e in storyboard["episodes"] if e.get("episodeNumber") == number)


EXPORT_MEDIA_TYPES = {"json": "application/json", "csv": "text/csv; charset=utf-8"}


@app.get("/api/v1/jobs/{job_id}/storyboard/export")
async def export_storyboard(job_id: str, format: str = "json"):
    """以 JSON 或 CSV（一行一个片段）下载分镜"""
    job = _get_job_or_404(job_id)
    _require(job, "export_storyboard", "storyboard")
    export_format = format.lower()
    if export_format not in EXPORT_MEDIA_TYPES:
        raise HTTPException(status_code=400, detail=f"不支持的导出格式：{format}")

    if export_format == "csv":
        body = StoryboardGenerator.export_csv(job["storyboard"])
    else:
        body = StoryboardGenerator.export_json(job["storyboard"])
    filename = quote(f"{job['title'] or 'unnamed'}_storyboard.{export_format}")
    return Response(
        content=body,
        media_type=EXPORT_MEDIA_TYPES[export_format],
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{filename}"}
    )


@app.post("/api/v1/jobs/{job_id}/assets")
def build_assets(job_id: str, request: Optional[AssetsRequest] = None,
                 processor: NovelProcessor = Depends(get_processor)):
    request = request or AssetsRequest()
    job = _get_job_or_404(job_id)
    _require(job, "assets", "storyBible")
    assets = processor.build_assets(StoryBible.from_dict(job["storyBible"]), request.style,
                                    use_llm=request.use_llm)
    job_store.set_stage(job_id, "assets", assets)
    return assets


# 单个资产只返回生成结果，不写入任务的 assets 阶段

@app.post("/api/v1/jobs/{job_id}/assets/characters/{character_id}")
def build_character_asset(job_id: str, character_id: str, request: Optional[AssetsRequest] = None,
                          processor: NovelProcessor = Depends(get_processor)):
    request = request or AssetsRequest()
    job = _get_job_or_404(job_id)
    _require(job, "character_asset", "storyBible")
    character = StoryBible.from_dict(job["storyBible"]).find_character(character_id)
    if character is None:
        raise HTTPException(status_code=404, detail=f"角色不存在：{character_id}")
    return processor.asset_generator(request.style, request.use_llm).generate_character_asset(character)


@app.post("/api/v1/jobs/{job_id}/assets/scenes")
def build_scene_asset(job_id: str, request: SceneAssetRequest,
                      processor: NovelProcessor = Depends(get_processor)):
    _get_job_or_404(job_id)
    scene = {"id": "S01", "name": request.name, "description": request.description,
             "atmosphere": request.atmosphere or "中性"}
    return processor.asset_generator(request.style, request.use_llm).generate_scene_asset(scene)


@app.post("/api/v1/jobs/{job_id}/assets/props")
def build_prop_asset(job_id: str, request: PropAssetRequest,
                     processor: NovelProcessor = Depends(get_processor)):
    _get_job_or_404(job_id)
    prop = {"id": "P01", "name": request.name, "description": request.description}
    return processor.asset_generator(request.style, use_llm=False).generate_prop_asset(prop)


# ==================== 启动配置 ====================

if __name__ == "__main__":
    import uvicorn
    from logger_config import setup_logging

    config = load_config()
    setup_logging(config.log_level, config.log_file)
    # 生产环境建议使用：uvicorn api:app --host 0.0.0.0 --port 8000
    uvicorn.run(
        "api:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
