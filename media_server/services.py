from dataclasses import dataclass

from media_server.assembler import Assembler
from media_server.config import Settings
from media_server.receiver import ChunkReceiver
from media_server.sessions import UploadSessionRegistry
from media_server.storage import LocalChunkStore, LocalObjectStore, S3ObjectStore, build_durable_store
from media_server.streaming import StreamServer


@dataclass
class MediaServices:
    config: Settings
    registry: UploadSessionRegistry
    chunk_store: LocalChunkStore
    object_store: LocalObjectStore
    receiver: ChunkReceiver
    assembler: Assembler
    stream_server: StreamServer
    durable_store: S3ObjectStore | None = None


def build_services(config: Settings) -> MediaServices:
    chunk_store = LocalChunkStore(config.staging_path())
    object_store = LocalObjectStore(config.objects_path())
    registry = UploadSessionRegistry(object_store)
    return MediaServices(
        config=config,
        registry=registry,
        chunk_store=chunk_store,
        object_store=object_store,
        receiver=ChunkReceiver(chunk_store, registry, max_chunk_size_bytes=config.max_chunk_size_bytes),
        assembler=Assembler(
            chunk_store,
            object_store,
            registry,
            copy_buffer_bytes=config.copy_buffer_bytes,
            default_content_type=config.default_content_type,
        ),
        stream_server=StreamServer(
            object_store,
            block_size=config.stream_block_bytes,
            default_content_type=config.default_content_type,
        ),
        durable_store=build_durable_store(config),
    )
