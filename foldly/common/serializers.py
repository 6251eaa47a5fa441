from foldly.models.file import File
from foldly.models.folder import Folder
from foldly.models.link import Link
from foldly.models.permission import Permission
from foldly.services.permissions import is_link_live

def folder_out(folder: Folder) -> dict:
    return {
        "id": str(folder.id),
        "workspace_id": str(folder.workspace_id),
        "parent_folder_id": str(folder.parent_folder_id) if folder.parent_folder_id else None,
        "name": folder.name,
        "link_id": str(folder.link_id) if folder.link_id else None,
        "is_shared": folder.link_id is not None,
        "created_by_email": folder.created_by_email,
        "created_at": folder.created_at,
    }

def file_out(file: File) -> dict:
    return {
        "id": str(file.id),
        "folder_id": str(file.folder_id) if file.folder_id else None,
        "link_id": str(file.link_id) if file.link_id else None,
        "filename": file.filename,
        "original_filename": file.original_filename,
        "size_bytes": file.size_bytes,
        "mime_type": file.mime_type,
        "uploader_email": file.uploader_email,
        "uploader_name": file.uploader_name,
        "uploaded_at": file.uploaded_at,
    }

def link_out(link: Link) -> dict:
    return {
        "id": str(link.id),
        "slug": link.slug,
        "title": link.title,
        "link_type": link.link_type,
        "folder_id": str(link.folder_id) if link.folder_id else None,
        "is_active": link.is_active,
        "accepting_uploads": is_link_live(link),
        "expires_at": link.expires_at,
        "requires_password": link.require_password,
        "max_files": link.max_files,
        "max_file_size_bytes": link.max_file_size_bytes,
        "total_uploads": link.total_uploads,
        "total_files": link.total_files,
        "total_size_bytes": link.total_size_bytes,
        "last_upload_at": link.last_upload_at,
        "created_at": link.created_at,
    }

def permission_out(permission: Permission) -> dict:
    return {
        "link_id": str(permission.link_id),
        "email": permission.email,
        "role": permission.role,
        "verified_at": permission.verified_at,
        "verification_expires_at": permission.verification_expires_at,
        "removed_at": permission.removed_at,
        "created_at": permission.created_at,
    }
