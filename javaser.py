# javaser.py - Java Object Serialization Stream reading and writing library for Python 3.6+
# Copyright (C) 2017, 2020 Christopher Gurnee
# All rights reserved.
#
# Redistribution and use in source and binary forms, with or without
# modification, are permitted provided that the following conditions
# are met:
#
# 1. Redistributions of source code must retain the above copyright
# notice, this list of conditions and the following disclaimer.
#
# 2. Redistributions in binary form must reproduce the above copyright
# notice, this list of conditions and the following disclaimer in the
# documentation and/or other materials provided with the distribution.
#
# THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS
# "AS IS" AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT
# LIMITED TO, THE IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR
# A PARTICULAR PURPOSE ARE DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT
# HOLDER OR CONTRIBUTORS BE LIABLE FOR ANY DIRECT, INDIRECT, INCIDENTAL,
# SPECIAL, EXEMPLARY, OR CONSEQUENTIAL DAMAGES (INCLUDING, BUT NOT
# LIMITED TO, PROCUREMENT OF SUBSTITUTE GOODS OR SERVICES; LOSS OF USE,
# DATA, OR PROFITS; OR BUSINESS INTERRUPTION) HOWEVER CAUSED AND ON ANY
# THEORY OF LIABILITY, WHETHER IN CONTRACT, STRICT LIABILITY, OR TORT
# (INCLUDING NEGLIGENCE OR OTHERWISE) ARISING IN ANY WAY OUT OF THE USE
# OF THIS SOFTWARE, EVEN IF ADVISED OF THE POSSIBILITY OF SUCH DAMAGE.

__all__ = ['load', 'loads', 'dump', 'dumps', 'Serialization', 'ObjectStream', 'ObjectStreamWriter',
           'HandleTable', 'find_class_bag', 'describe', 'hexdump', 'JSONEncoder', 'main']

import argparse, json, logging, sys
from collections import OrderedDict
from contextlib  import contextmanager
from struct      import Struct, error as StructError
from namedlist   import namedlist

log = logging.getLogger(__name__)


######## Reference: https://docs.oracle.com/javase/8/docs/platform/serialization/spec/protocol.html ########

STREAM_MAGIC   = 0xACED
STREAM_VERSION = 5

# The handle assigned to the first referenceable record of a stream (or after a reset)
BASE_HANDLE = 0x7E0000

TC_NULL           = 0x70
TC_REFERENCE      = 0x71
TC_CLASSDESC      = 0x72
TC_OBJECT         = 0x73
TC_STRING         = 0x74
TC_ARRAY          = 0x75
TC_CLASS          = 0x76
TC_BLOCKDATA      = 0x77
TC_ENDBLOCKDATA   = 0x78
TC_RESET          = 0x79
TC_BLOCKDATALONG  = 0x7A
TC_EXCEPTION      = 0x7B
TC_LONGSTRING     = 0x7C
TC_PROXYCLASSDESC = 0x7D
TC_ENUM           = 0x7E

TAG_NAMES = {value: name for name, value in list(globals().items()) if name.startswith('TC_')}

# classDescFlags bits; these are independent and may be combined
SC_WRITE_METHOD   = 0x01  # if SC_SERIALIZABLE
SC_SERIALIZABLE   = 0x02
SC_EXTERNALIZABLE = 0x04
SC_BLOCK_DATA     = 0x08  # if SC_EXTERNALIZABLE
SC_ENUM           = 0x10

FLAG_NAMES = OrderedDict((name, value) for name, value in list(globals().items()) if name.startswith('SC_'))

# Field typecodes; the primitive ones are read directly with these structs
_primitive_structs = {
    'B': Struct('>b'),
    'C': Struct('>H'),
    'D': Struct('>d'),
    'F': Struct('>f'),
    'I': Struct('>i'),
    'J': Struct('>q'),
    'S': Struct('>h'),
    'Z': Struct('>B'),  # any byte; only 0 and 1 become bools
}
OBJECT_TYPECODES = ('L', '[')
TYPECODE_NAMES = {'B': 'byte', 'C': 'char', 'D': 'double', 'F': 'float', 'I': 'int', 'J': 'long',
                  'S': 'short', 'Z': 'boolean', 'L': 'object', '[': 'array'}

_uint8  = Struct('>B')
_uint16 = Struct('>H')
_int32  = Struct('>i')
_uint32 = Struct('>I')
_int64  = Struct('>q')
_uint64 = Struct('>Q')

DEFAULT_MAX_CLASS_DEPTH = 256
DEFAULT_MAX_NESTING     = 128


######## Errors ########

class SerializationError(Exception):
    '''Raised when a stream can't be decoded; carries the byte offset and the record being read'''
    def __init__(self, message, offset=None, record=None):
        super().__init__(message)
        self.message = message
        self.offset  = offset
        self.record  = record

    def __str__(self):
        context = []
        if self.record is not None:
            context.append(f'while reading {self.record}')
        if self.offset is not None:
            context.append(f'at offset {self.offset:#x}')
        return ' '.join([self.message] + context)

class UnexpectedEndOfStream(SerializationError): pass
class UnsupportedTag(SerializationError):        pass
class UnresolvedHandle(SerializationError):      pass
class ClassChainTooDeep(SerializationError):     pass
class MalformedField(SerializationError):        pass
class InvalidStreamHeader(SerializationError):   pass
class NestingTooDeep(SerializationError):        pass

# Raised while writing a graph which is internally inconsistent; never raised by decoding
class EncodingError(Exception): pass


######## Modified UTF-8 ########

def decode_modified_utf8(raw):
    '''Decodes Java's modified UTF-8 leniently; malformed bytes become U+FFFD

    :param raw: the encoded bytes, without their length prefix
    :return: the decoded str; surrogate pairs are combined, lone surrogates are kept
    '''
    chars, i, length = [], 0, len(raw)
    while i < length:
        byte = raw[i]
        if byte < 0x80:
            chars.append(chr(byte))
            i += 1
        elif byte & 0xE0 == 0xC0 and i + 1 < length and raw[i+1] & 0xC0 == 0x80:
            chars.append(chr((byte & 0x1F) << 6 | raw[i+1] & 0x3F))
            i += 2
        elif byte & 0xF0 == 0xE0 and i + 2 < length and raw[i+1] & 0xC0 == 0x80 and raw[i+2] & 0xC0 == 0x80:
            chars.append(chr((byte & 0x0F) << 12 | (raw[i+1] & 0x3F) << 6 | raw[i+2] & 0x3F))
            i += 3
        else:
            chars.append('\ufffd')
            i += 1
    # each char above is one UTF-16 code unit; this joins any surrogate pairs
    return ''.join(chars).encode('utf-16-be', 'surrogatepass').decode('utf-16-be', 'surrogatepass')

def encode_modified_utf8(text):
    '''Encodes a str the way java.io.DataOutput.writeUTF() does (without the length prefix)'''
    units  = text.encode('utf-16-be', 'surrogatepass')
    result = bytearray()
    for (unit,) in _uint16.iter_unpack(units):
        if 0 < unit < 0x80:
            result.append(unit)
        elif unit < 0x800:  # (includes NUL, which is never encoded as a single zero byte)
            result += bytes((0xC0 | unit >> 6, 0x80 | unit & 0x3F))
        else:
            result += bytes((0xE0 | unit >> 12, 0x80 | unit >> 6 & 0x3F, 0x80 | unit & 0x3F))
    return bytes(result)

class JavaUtf(str):
    '''A str read from (or to be written as) modified UTF-8 which remembers its exact encoding,
    so that non-canonical input (e.g. overlong forms) is re-encoded byte-for-byte.
    '''
    def __new__(cls, text='', raw=None):
        self = super().__new__(cls, text)
        self.raw = encode_modified_utf8(text) if raw is None else bytes(raw)
        return self

    @classmethod
    def from_raw(cls, raw):
        return cls(decode_modified_utf8(raw), raw)

def utf_bytes(text):
    return text.raw if isinstance(text, JavaUtf) else encode_modified_utf8(text)


######## Primitive values ########

class JavaFloat(float):
    '''A float field value which keeps the four bytes it was read from,
    so that signalling NaNs and their payloads are written back exactly.
    '''
    def __new__(cls, value=0.0, raw=None):
        self = super().__new__(cls, value)
        self.raw = None if raw is None else bytes(raw)
        return self

    @classmethod
    def from_raw(cls, raw):
        return cls(_primitive_structs['F'].unpack(raw)[0], raw)

def unpack_primitive(typecode, raw):
    '''Converts the bytes of one primitive field or array element to a Python value

    chars become one-character strs, booleans stored as 0 or 1 become bools (any
    other byte stays an int so it's re-encoded unchanged), and floats become JavaFloats
    '''
    if typecode == 'F':
        return JavaFloat.from_raw(raw)
    value = _primitive_structs[typecode].unpack(raw)[0]
    if typecode == 'C':
        return chr(value)
    if typecode == 'Z' and value in (0, 1):
        return bool(value)
    return value

def pack_primitive(typecode, value):
    '''The inverse of unpack_primitive(); also accepts plain ints, floats, and bools'''
    if typecode == 'F' and isinstance(value, JavaFloat) and value.raw is not None:
        return value.raw
    if typecode == 'C' and isinstance(value, str):
        value = ord(value)
    return _primitive_structs[typecode].pack(value)


######## Records ########

# TC_NULL carries no data; all Nulls are equal
class Null:
    __slots__ = ()
    def __eq__(self, other):
        return isinstance(other, Null)
    def __hash__(self):
        return hash(Null)
    def __repr__(self):
        return 'Null()'

# TC_REFERENCE: a back-reference to an earlier record by its handle
Reference = namedlist('Reference', 'handle')

# Class descriptors. super_class is a class pointer: a Null, a Reference, or an inline descriptor.
ClassDesc      = namedlist('ClassDesc',      'name serial_version_uid flags fields annotations super_class handle', default=None)
ProxyClassDesc = namedlist('ProxyClassDesc', 'interfaces annotations super_class handle',                        default=None)
FieldDesc      = namedlist('FieldDesc',      'typecode name class_name',                                         default=None)

# An instance and its field data, one ClassData per class in its hierarchy (ancestor-first).
# ClassData.annotations is None if the class writes no annotation block.
JavaObject = namedlist('JavaObject', 'class_desc class_data handle',   default=None)
ClassData  = namedlist('ClassData',  'class_name values annotations',  default=None)
FieldValue = namedlist('FieldValue', 'name typecode value',            default=None)

JavaString = namedlist('JavaString', 'value long handle',              default=None)
JavaArray  = namedlist('JavaArray',  'class_desc values handle',       default=None)
JavaClass  = namedlist('JavaClass',  'class_desc handle',              default=None)
JavaEnum   = namedlist('JavaEnum',   'class_desc constant handle',     default=None)
BlockData  = namedlist('BlockData',  'data long',                      default=None)

CONTENT_TYPES    = (Null, Reference, ClassDesc, ProxyClassDesc, JavaObject, JavaString,
                    JavaArray, JavaClass, JavaEnum, BlockData)
CLASS_DESC_TYPES = (ClassDesc, ProxyClassDesc)

def class_name(desc):
    if isinstance(desc, ProxyClassDesc):
        return 'Proxy[' + ', '.join(desc.interfaces or ()) + ']'
    return desc.name


######## Handle table ########

class HandleTable:
    '''Maps the sequential handles of one decode (or encode) pass to the records they name.
    Handles start at BASE_HANDLE and are never reused.
    '''
    def __init__(self):
        self._entries = []

    def __len__(self):
        return len(self._entries)

    def __contains__(self, handle):
        return isinstance(handle, int) and 0 <= handle - BASE_HANDLE < len(self._entries)

    def __iter__(self):
        return ((BASE_HANDLE + i, obj) for i, obj in enumerate(self._entries))

    @property
    def next_handle(self):
        return BASE_HANDLE + len(self._entries)

    def add(self, obj):
        handle = self.next_handle
        self._entries.append(obj)
        return handle

    def resolve(self, handle, kinds=None):
        '''Returns the record assigned to a handle

        :param kinds: if given, a type or tuple of types the record must be an instance of
        :raises UnresolvedHandle: if the handle is unassigned or names the wrong kind of record
        '''
        if handle not in self:
            raise UnresolvedHandle(f'handle {handle:#x} has not been assigned')
        obj = self._entries[handle - BASE_HANDLE]
        if kinds and not isinstance(obj, kinds):
            raise UnresolvedHandle(f'handle {handle:#x} refers to a {type(obj).__name__}, not a ' +
                                   ' or '.join(k.__name__ for k in (kinds if isinstance(kinds, tuple) else (kinds,))))
        return obj


######## Class pointers ########

# Returns the ClassDesc or ProxyClassDesc a class pointer names, or None for a null pointer
def resolve_class_pointer(pointer, handles):
    if pointer is None or isinstance(pointer, Null):
        return None
    if isinstance(pointer, Reference):
        return handles.resolve(pointer.handle, CLASS_DESC_TYPES)
    if isinstance(pointer, CLASS_DESC_TYPES):
        return pointer
    raise TypeError(f'{type(pointer).__name__} is not a class pointer')

def find_class_bag(pointer, handles, max_depth=DEFAULT_MAX_CLASS_DEPTH):
    '''Walks a class pointer's superclass chain

    :param pointer: a Null, a Reference to a class descriptor, or an inline class descriptor
    :param handles: the HandleTable references are resolved against
    :param max_depth: the most classes a hierarchy may have
    :return: a list of class descriptors, most-derived first; empty for a null pointer
    '''
    bag  = []
    desc = resolve_class_pointer(pointer, handles)
    while desc is not None:
        if len(bag) >= max_depth:
            name = class_name(bag[0] if bag else desc)
            raise ClassChainTooDeep(f'class hierarchy of {name} exceeds {max_depth} classes')
        bag.append(desc)
        desc = resolve_class_pointer(desc.super_class, handles)
    return bag

# Returns the element typecode of the array class a class pointer names
def array_element_typecode(pointer, handles):
    desc = resolve_class_pointer(pointer, handles)
    name = class_name(desc) if desc is not None else None
    if not isinstance(desc, ClassDesc) or len(name) < 2 or name[0] != '[' \
            or name[1] not in _primitive_structs and name[1] not in OBJECT_TYPECODES:
        raise MalformedField(f'{name!r} is not an array class')
    return name[1]


# Decorator which adds a handler function to a registration dict under the given key
# (a tag byte for the readers, a record type for the writers and describers)
def _register(type_dict, key):
    def decorator(func):
        type_dict[key] = func
        return func
    return decorator


######## Reading ########

class ObjectStream:
    '''Decodes a Java Object Serialization Stream held in memory.
    One ObjectStream (and its HandleTable) belongs to exactly one decode.
    '''
    def __init__(self, data, max_class_depth=DEFAULT_MAX_CLASS_DEPTH, max_nesting=DEFAULT_MAX_NESTING):
        '''
        :param data: a bytes-like object holding the stream
        :param max_class_depth: the most classes an object's hierarchy may have
        :param max_nesting: the most records which may be nested inside one another; each inline
            superclass descriptor nests inside its subclass's, so this also caps hierarchies
            written without back-references, independently of max_class_depth
        '''
        self._data           = bytes(data)
        self._pos            = 0
        self._depth          = 0     # current record nesting, also used to indent debug logging
        self.handles         = HandleTable()
        self.max_class_depth = max_class_depth
        self.max_nesting     = max_nesting

    def _debug(self, message, *args):
        if log.isEnabledFor(logging.DEBUG):
            log.debug('  ' * self._depth + message, *args)

    # The byte cursor; nothing below interprets the bytes it returns

    def tell(self):
        return self._pos

    def remaining(self):
        return len(self._data) - self._pos

    def peek(self, count):
        if count > self.remaining():
            raise UnexpectedEndOfStream(f'needed {count} byte(s) but only {self.remaining()} remain', self._pos)
        return self._data[self._pos : self._pos + count]

    def read(self, count):
        data = self.peek(count)
        self._pos += count
        return data

    def peek_byte(self):
        return self.peek(1)[0]

    def read_byte(self):
        return self.read(1)[0]

    def unpack(self, struct):
        return struct.unpack(self.read(struct.size))[0]

    def read_utf(self, length_struct=_uint16):
        return JavaUtf.from_raw(self.read(self.unpack(length_struct)))

    # Reads a signed count (of interfaces, array elements, or block data bytes)
    def _read_count(self, struct, what):
        offset = self._pos
        count  = self.unpack(struct)
        if count < 0:
            raise SerializationError(f'negative {what} ({count})', offset)
        return count

    def add_reference(self, obj):
        '''Assigns the next handle to a referenceable record and returns it'''
        obj.handle = self.handles.add(obj)
        self._debug('new handle %#x for %s', obj.handle, type(obj).__name__)
        return obj.handle

    # The tag dispatcher: a dict of all content readers indexed by their tag byte.
    # Each reader consumes its own tag byte, which read_content() only peeks at.
    _Content_readers = {}

    def read_content(self, allowed=None):
        '''Reads the record introduced by the next tag byte

        :param allowed: if given, the set of tags acceptable at this point
        :return: the decoded record
        '''
        offset = self._pos
        tag    = self.peek_byte()
        reader = self._Content_readers.get(tag)
        if reader is None:
            raise UnsupportedTag(f'unsupported tag {tag:#04x} ({TAG_NAMES.get(tag, "unknown")})', offset)
        if allowed is not None and tag not in allowed:
            raise UnsupportedTag(f'{TAG_NAMES[tag]} is not allowed here', offset)
        if self._depth >= self.max_nesting:
            raise NestingTooDeep(f'records are nested more than {self.max_nesting} deep', offset)
        self._debug('%s at offset %#x', TAG_NAMES[tag], offset)
        self._depth += 1
        try:
            return reader(self)
        except SerializationError as e:
            if e.record is None:
                e.record = TAG_NAMES[tag]
            if e.offset is None:
                e.offset = self._pos
            raise
        finally:
            self._depth -= 1

    @_register(_Content_readers, TC_NULL)
    def _read_Null(self):
        self.read_byte()
        return Null()

    @_register(_Content_readers, TC_REFERENCE)
    def _read_Reference(self, kinds=None):
        self.read_byte()
        handle = self.unpack(_uint32)
        self.handles.resolve(handle, kinds)  # a reference must name an earlier record
        self._debug('reference to handle %#x', handle)
        return Reference(handle)

    _class_pointer_tags = frozenset((TC_NULL, TC_CLASSDESC, TC_PROXYCLASSDESC))

    def read_class_pointer(self):
        '''Reads a Null, a Reference to an earlier class descriptor, or a new class descriptor'''
        if self.peek_byte() == TC_REFERENCE:
            return self._read_Reference(CLASS_DESC_TYPES)
        return self.read_content(self._class_pointer_tags)

    _string_tags      = frozenset((TC_STRING, TC_LONGSTRING))
    _type_string_tags = _string_tags | {TC_NULL}

    # A field's type string may also be null; an enum's constant name may not
    def _read_String_or_Reference(self, nullable=False):
        if self.peek_byte() == TC_REFERENCE:
            return self._read_Reference(JavaString)
        return self.read_content(self._type_string_tags if nullable else self._string_tags)

    def read_annotations(self):
        '''Reads contents up to and including the TC_ENDBLOCKDATA which terminates them'''
        annotations = []
        while self.peek_byte() != TC_ENDBLOCKDATA:
            annotations.append(self.read_content())
        self.read_byte()
        return annotations


    ######## Class descriptors ########

    @_register(_Content_readers, TC_CLASSDESC)
    def _read_ClassDesc(self):
        self.read_byte()
        desc = ClassDesc(name=self.read_utf(), serial_version_uid=self.unpack(_int64))
        # the handle is assigned before the rest is read so the rest can refer to it
        self.add_reference(desc)
        desc.flags = self.read_byte()
        self._debug('class %s, serialVersionUID %#x, flags %#04x', desc.name, desc.serial_version_uid, desc.flags)
        desc.fields      = [self._read_FieldDesc() for i in range(self.unpack(_uint16))]
        desc.annotations = self.read_annotations()
        desc.super_class = self.read_class_pointer()
        return desc

    def _read_FieldDesc(self):
        offset   = self._pos
        typecode = chr(self.read_byte())
        if typecode not in _primitive_structs and typecode not in OBJECT_TYPECODES:
            raise MalformedField(f'unknown field typecode {ord(typecode):#04x}', offset)
        field = FieldDesc(typecode, self.read_utf())
        if typecode in OBJECT_TYPECODES:
            field.class_name = self._read_String_or_Reference(nullable=True)
        self._debug('field %s %s', TYPECODE_NAMES[typecode], field.name)
        return field

    @_register(_Content_readers, TC_PROXYCLASSDESC)
    def _read_ProxyClassDesc(self):
        self.read_byte()
        desc = ProxyClassDesc()
        self.add_reference(desc)
        desc.interfaces  = [self.read_utf() for i in range(self._read_count(_int32, 'interface count'))]
        desc.annotations = self.read_annotations()
        desc.super_class = self.read_class_pointer()
        return desc

    @_register(_Content_readers, TC_CLASS)
    def _read_Class(self):
        self.read_byte()
        clazz = JavaClass(self.read_class_pointer())
        self.add_reference(clazz)
        return clazz


    ######## Objects ########

    @_register(_Content_readers, TC_OBJECT)
    def _read_Object(self):
        self.read_byte()
        obj = JavaObject(self.read_class_pointer(), [])
        self.add_reference(obj)
        if isinstance(obj.class_desc, Null):
            return obj
        bag = find_class_bag(obj.class_desc, self.handles, self.max_class_depth)
        # The bag is most-derived first, but field data is written ancestor-first
        for desc in reversed(bag):
            obj.class_data.append(self._read_ClassData(desc))
        return obj

    def _read_ClassData(self, desc):
        data = ClassData(class_name(desc), [])
        self._debug('data of %s', data.class_name)
        if isinstance(desc, ProxyClassDesc):
            return data  # proxies are Serializable without any fields
        if desc.flags & SC_SERIALIZABLE:
            for field in desc.fields:
                data.values.append(FieldValue(field.name, field.typecode, self.read_value(field.typecode)))
            if desc.flags & SC_WRITE_METHOD:
                data.annotations = self.read_annotations()
        elif desc.flags & SC_EXTERNALIZABLE:
            if not desc.flags & SC_BLOCK_DATA:
                raise SerializationError(f'{desc.name} was written without SC_BLOCK_DATA; its '
                                         'externalContents cannot be read without the class', self._pos)
            data.annotations = self.read_annotations()
        return data

    _value_tags = frozenset((TC_NULL, TC_REFERENCE, TC_CLASSDESC, TC_PROXYCLASSDESC, TC_OBJECT,
                             TC_STRING, TC_LONGSTRING, TC_ARRAY, TC_CLASS, TC_ENUM))

    def read_value(self, typecode):
        '''Reads one field or array element value of the given typecode'''
        if typecode in OBJECT_TYPECODES:
            return self.read_content(self._value_tags)
        value = unpack_primitive(typecode, self.read(_primitive_structs[typecode].size))
        self._debug('%s %r', TYPECODE_NAMES[typecode], value)
        return value


    ######## Strings, arrays, enums, and block data ########

    @_register(_Content_readers, TC_STRING)
    def _read_String(self):
        self.read_byte()
        string = JavaString(self.read_utf())
        self.add_reference(string)
        self._debug('string %r', string.value)
        return string

    @_register(_Content_readers, TC_LONGSTRING)
    def _read_LongString(self):
        self.read_byte()
        string = JavaString(self.read_utf(_uint64), long=True)
        self.add_reference(string)
        return string

    @_register(_Content_readers, TC_ARRAY)
    def _read_Array(self):
        self.read_byte()
        array = JavaArray(self.read_class_pointer())
        self.add_reference(array)
        typecode     = array_element_typecode(array.class_desc, self.handles)
        array.values = [self.read_value(typecode) for i in range(self._read_count(_int32, 'array size'))]
        return array

    @_register(_Content_readers, TC_ENUM)
    def _read_Enum(self):
        self.read_byte()
        enum = JavaEnum(self.read_class_pointer())
        self.add_reference(enum)
        enum.constant = self._read_String_or_Reference()
        return enum

    @_register(_Content_readers, TC_BLOCKDATA)
    def _read_BlockData(self):
        self.read_byte()
        return BlockData(self.read(self.unpack(_uint8)))

    @_register(_Content_readers, TC_BLOCKDATALONG)
    def _read_BlockDataLong(self):
        self.read_byte()
        return BlockData(self.read(self._read_count(_int32, 'block data length')), long=True)


    def read_stream(self):
        '''Reads the stream header and every content record after it

        :return: a Serialization holding the contents and the handle table built while reading them
        '''
        try:
            magic   = self.unpack(_uint16)
            version = self.unpack(_uint16)
            if magic != STREAM_MAGIC or version != STREAM_VERSION:
                raise InvalidStreamHeader(f'invalid stream header {magic:04X}{version:04X}', 0)
            if not self.remaining():
                raise UnexpectedEndOfStream('the stream holds no contents', self._pos)
            contents = []
            while self.remaining():
                contents.append(self.read_content())
        except SerializationError as e:
            self._dump_state(e)
            raise
        log.debug('stream decoded: %d content(s), %d handle(s)', len(contents), len(self.handles))
        return Serialization(contents, magic, version, self.handles)

    def _dump_state(self, error):
        log.error('decoding failed: %s', error)
        log.error('%d handle(s) had been assigned; bytes near the failure:', len(self.handles))
        start = max(0, (error.offset if error.offset is not None else self._pos) - 16)
        for line in hexdump(self._data[start : start + 48], start).splitlines():
            log.error('%s', line)


######## Writing ########

class ObjectStreamWriter:
    '''Encodes records into a Java Object Serialization Stream.
    Handles are re-assigned in write order, exactly as a reader would assign them.
    '''
    def __init__(self, max_class_depth=DEFAULT_MAX_CLASS_DEPTH):
        self._out            = bytearray()
        self.handles         = HandleTable()
        self.max_class_depth = max_class_depth

    def getvalue(self):
        return bytes(self._out)

    def write(self, data):
        self._out += data

    def pack(self, struct, value):
        try:
            self._out += struct.pack(value)
        except StructError as e:
            raise EncodingError(f'{value!r} does not fit format {struct.format!r}') from e

    def write_utf(self, text, length_struct=_uint16):
        raw = utf_bytes(text)
        self.pack(length_struct, len(raw))
        self._out += raw

    def add_reference(self, record):
        handle = self.handles.add(record)
        if record.handle is not None and record.handle != handle:
            raise EncodingError(f'{type(record).__name__} has handle {record.handle:#x} '
                                f'but would be assigned {handle:#x}')
        return handle

    # Raise EncodingError instead of a decode error for anything a graph refers to incorrectly
    @contextmanager
    def _consistency_check(self):
        try:
            yield
        except SerializationError as e:
            raise EncodingError(e.message) from e

    def class_bag(self, pointer):
        with self._consistency_check():
            return find_class_bag(pointer, self.handles, self.max_class_depth)

    # A dict of all content writers indexed by record type
    _Content_writers = {}

    def write_content(self, content):
        '''Writes one record (None is written as TC_NULL)'''
        if content is None:
            content = Null()
        writer = self._Content_writers.get(type(content))
        if writer is None:
            raise EncodingError(f'{type(content).__name__} is not a stream record')
        writer(self, content)

    def write_class_pointer(self, pointer):
        if pointer is not None and not isinstance(pointer, (Null, Reference) + CLASS_DESC_TYPES):
            raise EncodingError(f'{type(pointer).__name__} is not a class pointer')
        if isinstance(pointer, Reference):
            with self._consistency_check():
                self.handles.resolve(pointer.handle, CLASS_DESC_TYPES)
        self.write_content(pointer)

    def write_annotations(self, annotations):
        for content in annotations:
            self.write_content(content)
        self._out.append(TC_ENDBLOCKDATA)

    @_register(_Content_writers, Null)
    def _write_Null(self, null):
        self._out.append(TC_NULL)

    @_register(_Content_writers, Reference)
    def _write_Reference(self, reference):
        if reference.handle not in self.handles:
            raise EncodingError(f'reference to handle {reference.handle:#x} precedes the record it names')
        self._out.append(TC_REFERENCE)
        self.pack(_uint32, reference.handle)

    @_register(_Content_writers, ClassDesc)
    def _write_ClassDesc(self, desc):
        self._out.append(TC_CLASSDESC)
        self.write_utf(desc.name)
        self.pack(_int64, desc.serial_version_uid)
        self.add_reference(desc)
        self.pack(_uint8, desc.flags)
        fields = desc.fields or ()
        self.pack(_uint16, len(fields))
        for field in fields:
            self._write_FieldDesc(field)
        self.write_annotations(desc.annotations or ())
        self.write_class_pointer(desc.super_class)

    def _write_FieldDesc(self, field):
        if field.typecode not in _primitive_structs and field.typecode not in OBJECT_TYPECODES:
            raise EncodingError(f'unknown field typecode {field.typecode!r}')
        self._out += field.typecode.encode('ascii')
        self.write_utf(field.name)
        if field.typecode in OBJECT_TYPECODES:
            if not isinstance(field.class_name, (JavaString, Reference, Null)):
                raise EncodingError(f'field {field.name} needs a JavaString, Reference, or Null class name')
            self.write_content(field.class_name)

    @_register(_Content_writers, ProxyClassDesc)
    def _write_ProxyClassDesc(self, desc):
        self._out.append(TC_PROXYCLASSDESC)
        self.add_reference(desc)
        interfaces = desc.interfaces or ()
        self.pack(_int32, len(interfaces))
        for interface in interfaces:
            self.write_utf(interface)
        self.write_annotations(desc.annotations or ())
        self.write_class_pointer(desc.super_class)

    @_register(_Content_writers, JavaClass)
    def _write_Class(self, clazz):
        self._out.append(TC_CLASS)
        self.write_class_pointer(clazz.class_desc)
        self.add_reference(clazz)

    @_register(_Content_writers, JavaObject)
    def _write_Object(self, obj):
        self._out.append(TC_OBJECT)
        self.write_class_pointer(obj.class_desc)
        self.add_reference(obj)
        class_data = obj.class_data or ()
        bag        = self.class_bag(obj.class_desc)
        if len(class_data) != len(bag):
            name = class_name(bag[0]) if bag else 'null'
            raise EncodingError(f'object of class {name} has {len(class_data)} field-data block(s) '
                                f'but its class hierarchy has {len(bag)} class(es)')
        for data in class_data:  # (already ancestor-first)
            for value in data.values or ():
                self.write_value(value.typecode, value.value)
            if data.annotations is not None:
                self.write_annotations(data.annotations)

    def write_value(self, typecode, value):
        '''Writes one field or array element value of the given typecode'''
        if typecode in OBJECT_TYPECODES:
            self.write_content(value)
        elif typecode in _primitive_structs:
            try:
                self._out += pack_primitive(typecode, value)
            except (StructError, TypeError) as e:
                raise EncodingError(f'{value!r} is not a valid {TYPECODE_NAMES[typecode]} value') from e
        else:
            raise EncodingError(f'unknown typecode {typecode!r}')

    @_register(_Content_writers, JavaString)
    def _write_String(self, string):
        if string.long:
            self._out.append(TC_LONGSTRING)
            self.write_utf(string.value, _uint64)
        else:
            self._out.append(TC_STRING)
            self.write_utf(string.value)
        self.add_reference(string)

    @_register(_Content_writers, JavaArray)
    def _write_Array(self, array):
        self._out.append(TC_ARRAY)
        self.write_class_pointer(array.class_desc)
        self.add_reference(array)
        with self._consistency_check():
            typecode = array_element_typecode(array.class_desc, self.handles)
        values = array.values or ()
        self.pack(_int32, len(values))
        for value in values:
            self.write_value(typecode, value)

    @_register(_Content_writers, JavaEnum)
    def _write_Enum(self, enum):
        self._out.append(TC_ENUM)
        self.write_class_pointer(enum.class_desc)
        self.add_reference(enum)
        if not isinstance(enum.constant, (JavaString, Reference)):
            raise EncodingError('an enum constant name must be a JavaString or Reference')
        self.write_content(enum.constant)

    @_register(_Content_writers, BlockData)
    def _write_BlockData(self, block):
        if block.long:
            self._out.append(TC_BLOCKDATALONG)
            self.pack(_int32, len(block.data))
        else:
            self._out.append(TC_BLOCKDATA)
            self.pack(_uint8, len(block.data))
        self._out += block.data

    def write_stream(self, serialization):
        self.pack(_uint16, serialization.magic)
        self.pack(_uint16, serialization.version)
        for content in serialization.contents:
            self.write_content(content)


# Ensure the dispatchers cover the same closed set of records
assert set(ObjectStream._Content_readers) == set(TAG_NAMES) - {TC_ENDBLOCKDATA, TC_RESET, TC_EXCEPTION}
assert set(ObjectStreamWriter._Content_writers) == set(CONTENT_TYPES)


######## The decoded stream ########

class Serialization:
    '''A decoded (or hand-built) stream: its header, its top-level contents, and the
    handle table which References among those contents are resolved against.
    '''
    def __init__(self, contents=None, magic=STREAM_MAGIC, version=STREAM_VERSION, handles=None):
        self.contents = [] if contents is None else contents
        self.magic    = magic
        self.version  = version
        self._handles = handles

    def __repr__(self):
        return f'Serialization(contents={self.contents!r})'

    @property
    def handles(self):
        '''The handle table; for a hand-built Serialization it's built by encoding the contents'''
        if self._handles is None:
            writer = ObjectStreamWriter()
            writer.write_stream(self)
            self._handles = writer.handles
        return self._handles

    def resolve(self, content):
        '''Follows a Reference to the record it names; any other record is returned as is'''
        if isinstance(content, Reference):
            return self.handles.resolve(content.handle)
        return content

    def class_bag(self, obj, max_depth=DEFAULT_MAX_CLASS_DEPTH):
        '''Returns the class hierarchy (most-derived first) of an object, array, class,
        or enum record, or of a class pointer
        '''
        pointer = obj.class_desc if isinstance(obj, (JavaObject, JavaArray, JavaClass, JavaEnum)) else obj
        return find_class_bag(pointer, self.handles, max_depth)

    def to_bytes(self):
        return dumps(self)

    def describe(self):
        return describe(self)


def loads(data, **options):
    '''Decode a Java Object Serialization Stream

    :param data: a bytes-like object beginning with the stream header
    :param options: max_class_depth and/or max_nesting, see ObjectStream
    :return: a Serialization
    '''
    return ObjectStream(data, **options).read_stream()

def load(streamfile, **options):
    '''Decode a Java Object Serialization Stream from a binary file-like object'''
    return loads(streamfile.read(), **options)

def dumps(obj):
    '''Encode a Serialization, a list of records, or a single record (with a stream header)

    :return: the encoded bytes
    '''
    if not isinstance(obj, Serialization):
        obj = Serialization(list(obj) if isinstance(obj, (list, tuple)) else [obj])
    writer = ObjectStreamWriter()
    writer.write_stream(obj)
    return writer.getvalue()

def dump(obj, streamfile):
    streamfile.write(dumps(obj))


######## Human-readable output ########

def hexify(data):
    return '0x' + ' '.join(f'{b:02x}' for b in data)

def _hex_tag(tag):
    return f'{TAG_NAMES[tag]} - {tag:#04x}'

_printable = ''.join(chr(x) if 0x20 <= x < 0x7F else '.' for x in range(256))

def hexdump(data, start_offset=0, length=16):
    '''Formats bytes as lines of offset, hex, and printable characters'''
    result = []
    for i in range(0, len(data), length):
        chunk     = data[i : i+length]
        hexa      = ' '.join(f'{b:02X}' for b in chunk)
        printable = ''.join(_printable[b] for b in chunk)
        result.append(f'{i + start_offset:04X}   {hexa:<{length*3}}  {printable}\n')
    return ''.join(result)

def flag_names(flags):
    return '|'.join(name for name, bit in FLAG_NAMES.items() if flags & bit)

# An indenting text builder
class _Printer:
    def __init__(self):
        self._lines  = []
        self._indent = 0

    def print(self, text):
        self._lines.append('  ' * self._indent + text)

    @contextmanager
    def indented(self):
        self._indent += 1
        try:
            yield
        finally:
            self._indent -= 1

    def __str__(self):
        return '\n'.join(self._lines)

# A dict of all describers indexed by record type
_Content_describers = {}

def describe(obj):
    '''Renders a record, or a whole Serialization, as indented text'''
    printer = _Printer()
    if isinstance(obj, Serialization):
        printer.print(f'@Magic - {hexify(_uint16.pack(obj.magic))}')
        printer.print(f'@Version - {hexify(_uint16.pack(obj.version))}')
        printer.print('@Contents')
        with printer.indented():
            for content in obj.contents:
                _describe_content(printer, content)
    else:
        _describe_content(printer, obj)
    return str(printer)

def _describe_content(p, content):
    if content is None:
        content = Null()
    describer = _Content_describers.get(type(content))
    if describer is None:
        raise TypeError(f'{type(content).__name__} is not a stream record')
    describer(p, content)

def _describe_handle(p, handle):
    if handle is not None:
        p.print(f'@Handler - {handle} - {hexify(_uint32.pack(handle))}')

def _describe_annotations(p, title, annotations):
    p.print(title)
    with p.indented():
        for index, content in enumerate(annotations):
            p.print(f'Index {index}:')
            with p.indented():
                _describe_content(p, content)
        p.print(_hex_tag(TC_ENDBLOCKDATA))

def _describe_value(p, typecode, value):
    if typecode in OBJECT_TYPECODES:
        _describe_content(p, value)
    else:
        packed = pack_primitive(typecode, value)
        p.print(f'({TYPECODE_NAMES[typecode]}){value!r} - {hexify(packed)}')

@_register(_Content_describers, Null)
def _describe_Null(p, null):
    p.print(_hex_tag(TC_NULL))

@_register(_Content_describers, Reference)
def _describe_Reference(p, reference):
    p.print(_hex_tag(TC_REFERENCE))
    with p.indented():
        _describe_handle(p, reference.handle)

@_register(_Content_describers, ClassDesc)
def _describe_ClassDesc(p, desc):
    fields = desc.fields or ()
    p.print(_hex_tag(TC_CLASSDESC))
    with p.indented():
        p.print(f'@ClassName - {desc.name}')
        p.print(f'@SerialVersionUID - {desc.serial_version_uid} - {hexify(_int64.pack(desc.serial_version_uid))}')
        _describe_handle(p, desc.handle)
        p.print(f'@ClassDescFlags - {flag_names(desc.flags)} - {desc.flags:#04x}')
        p.print(f'@FieldCount - {len(fields)} - {hexify(_uint16.pack(len(fields)))}')
        p.print('[]Fields')
        with p.indented():
            for index, field in enumerate(fields):
                p.print(f'Index {index}:')
                with p.indented():
                    p.print(f'{TYPECODE_NAMES[field.typecode]} - {field.typecode} - {ord(field.typecode):#04x}')
                    with p.indented():
                        p.print(f'@FieldName - {field.name}')
                        if field.class_name is not None:
                            p.print('@ClassName')
                            with p.indented():
                                _describe_content(p, field.class_name)
        _describe_annotations(p, '[]ClassAnnotations', desc.annotations or ())
        p.print('@SuperClassDesc')
        with p.indented():
            _describe_content(p, desc.super_class)

@_register(_Content_describers, ProxyClassDesc)
def _describe_ProxyClassDesc(p, desc):
    interfaces = desc.interfaces or ()
    p.print(_hex_tag(TC_PROXYCLASSDESC))
    with p.indented():
        _describe_handle(p, desc.handle)
        p.print(f'@InterfaceCount - {len(interfaces)} - {hexify(_int32.pack(len(interfaces)))}')
        p.print('[]Interfaces')
        with p.indented():
            for index, interface in enumerate(interfaces):
                p.print(f'Index {index}: {interface}')
        _describe_annotations(p, '[]ClassAnnotations', desc.annotations or ())
        p.print('@SuperClassDesc')
        with p.indented():
            _describe_content(p, desc.super_class)

@_register(_Content_describers, JavaClass)
def _describe_Class(p, clazz):
    p.print(_hex_tag(TC_CLASS))
    with p.indented():
        _describe_content(p, clazz.class_desc)
        _describe_handle(p, clazz.handle)

@_register(_Content_describers, JavaObject)
def _describe_Object(p, obj):
    p.print(_hex_tag(TC_OBJECT))
    with p.indented():
        _describe_content(p, obj.class_desc)
        _describe_handle(p, obj.handle)
        p.print('[]ClassData')
        with p.indented():
            for data in obj.class_data or ():
                p.print(f'@ClassName - {data.class_name}')
                with p.indented():
                    p.print('{}Attributes')
                    with p.indented():
                        for value in data.values or ():
                            p.print(value.name)
                            with p.indented():
                                _describe_value(p, value.typecode, value.value)
                    if data.annotations is not None:
                        _describe_annotations(p, '@ObjectAnnotation', data.annotations)

@_register(_Content_describers, JavaString)
def _describe_String(p, string):
    raw = utf_bytes(string.value)
    p.print(_hex_tag(TC_LONGSTRING if string.long else TC_STRING))
    with p.indented():
        _describe_handle(p, string.handle)
        length = (_uint64 if string.long else _uint16).pack(len(raw))
        p.print(f'@Length - {len(raw)} - {hexify(length)}')
        p.print(f'@Value - {string.value}')

@_register(_Content_describers, JavaArray)
def _describe_Array(p, array):
    values = array.values or ()
    p.print(_hex_tag(TC_ARRAY))
    with p.indented():
        _describe_content(p, array.class_desc)
        _describe_handle(p, array.handle)
        p.print(f'@ArraySize - {len(values)} - {hexify(_int32.pack(len(values)))}')
        p.print('[]Values')
        with p.indented():
            # the element type isn't recorded in the array, so it's inferred from each value
            for index, value in enumerate(values):
                p.print(f'Index {index}:')
                with p.indented():
                    if isinstance(value, CONTENT_TYPES) or value is None:
                        _describe_content(p, value)
                    else:
                        p.print(repr(value))

@_register(_Content_describers, JavaEnum)
def _describe_Enum(p, enum):
    p.print(_hex_tag(TC_ENUM))
    with p.indented():
        _describe_content(p, enum.class_desc)
        _describe_handle(p, enum.handle)
        p.print('@EnumConstantName')
        with p.indented():
            _describe_content(p, enum.constant)

@_register(_Content_describers, BlockData)
def _describe_BlockData(p, block):
    p.print(_hex_tag(TC_BLOCKDATALONG if block.long else TC_BLOCKDATA))
    with p.indented():
        length = (_int32 if block.long else _uint8).pack(len(block.data))
        p.print(f'@Blockdata - {len(block.data)} - {hexify(length)}')
        p.print(f'@Data - {hexify(block.data)}')

assert set(_Content_describers) == set(CONTENT_TYPES)


# A JSONEncoder which can convert a Serialization or any of its records into json
class JSONEncoder(json.JSONEncoder):
    def default(self, o):
        if hasattr(o, '_asdict'):
            d = OrderedDict(_class_name=o.__class__.__name__)  # prepend the class name
            d.update(o._asdict())
            return d
        if isinstance(o, Serialization):
            return OrderedDict(_class_name='Serialization', magic=o.magic, version=o.version, contents=o.contents)
        if isinstance(o, Null):
            return None
        if isinstance(o, (bytes, bytearray)):
            return o.hex()
        return super().default(o)


######## Command line ########

# An argparse type for the decode limits
def _positive_int(text):
    value = int(text)
    if value < 1:
        raise argparse.ArgumentTypeError(f'must be at least 1, not {value}')
    return value

def main(argv=None):
    parser = argparse.ArgumentParser(prog='javaser', description='Decode a Java Object Serialization Stream')
    parser.add_argument('streamfile', help='the serialized stream to read, or - for stdin')
    parser.add_argument('-f', '--format', choices=('text', 'json', 'hex'), default='text',
                        help='output format (default: text)')
    parser.add_argument('--check-roundtrip', action='store_true',
                        help='re-encode the decoded stream and fail if it differs from the input')
    parser.add_argument('--max-class-depth', type=_positive_int, default=DEFAULT_MAX_CLASS_DEPTH, metavar='N',
                        help=f'the most classes an object hierarchy may have (default: {DEFAULT_MAX_CLASS_DEPTH})')
    parser.add_argument('--max-nesting', type=_positive_int, default=DEFAULT_MAX_NESTING, metavar='N',
                        help=f'the most records which may be nested, inline superclasses included (default: {DEFAULT_MAX_NESTING})')
    parser.add_argument('-v', '--verbose', action='store_true', help='log every record as it is decoded')
    args = parser.parse_args(argv)

    logging.basicConfig(format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
                        level=logging.DEBUG if args.verbose else logging.WARNING)

    if args.streamfile == '-':
        data = sys.stdin.buffer.read()
    else:
        with open(args.streamfile, 'rb') as streamfile:
            data = streamfile.read()

    try:
        serialization = loads(data, max_class_depth=args.max_class_depth, max_nesting=args.max_nesting)
    except SerializationError as e:
        print(f'{args.streamfile}: {e}', file=sys.stderr)
        return 1

    if args.format == 'json':
        json.dump(serialization, sys.stdout, cls=JSONEncoder, indent=4)
        print()
    elif args.format == 'hex':
        sys.stdout.write(hexdump(data))
    else:
        print(serialization.describe())

    if args.check_roundtrip and serialization.to_bytes() != data:
        print(f'{args.streamfile}: re-encoded stream differs from the input', file=sys.stderr)
        return 2
    return 0


if __name__ == '__main__':
    sys.exit(main())
